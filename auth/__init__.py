"""auth/ -- Credential and session lifecycle package for Notez.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/; settings arrive as constructor
arguments. api/ imports from auth/, not the other way around.
"""
