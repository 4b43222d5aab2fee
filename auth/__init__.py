"""auth/ -- Authentication and session package for the member portal.

Layer rule: auth/ imports only stdlib + third-party libraries, plus auth/
itself. It does NOT import from api/ or core/. api/ imports from auth/, not
the other way around.

The two interfaces the rest of the portal consumes:
  SessionManager.issue_tokens() / .refresh()  -- mint or rotate a session.
  AccessGuard.authenticate()                  -- bearer token -> Principal.
"""
