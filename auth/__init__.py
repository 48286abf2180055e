"""auth/ -- Credentials, session tokens, and activity logging for Helfy.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/, core/, or cdc/.
api/ imports from auth/, not the other way around.
"""
