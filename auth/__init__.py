"""auth/ -- Identity subsystem for Dim: credentials, tokens, invites, registration.

Layer rule: auth/ imports only core/, stdlib, and third-party libraries.
It does NOT import from api/ or catalog/.
api/ imports from auth/, not the other way around.
"""
