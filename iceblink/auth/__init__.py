"""
Authentication for the sync API.

Design goals:
- Relay login to an external OpenID Connect provider (we are a client, not an OAuth server).
- Stateless sessions: a signed JWT carried as a bearer header or cookie.
- Fail closed: every data route requires a valid session.
"""
