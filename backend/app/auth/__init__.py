"""Authentication module.

Turns a bearer credential into a verified :class:`Identity`.

Services:
    - IdentityProvider: abstract token verifier.
    - JWTIdentityProvider: HS256 JSON Web Token issuer/verifier (PyJWT).
    - SessionAuthenticator: connection-time credential check.
"""
