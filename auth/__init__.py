"""auth/ -- Authentication, session, token, 2FA and OAuth core for AuthCore.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
