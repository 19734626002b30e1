"""auth/ -- Authentication and authorization core for PyroAlert.

Credential store, JWT issuer, refresh token store, TOTP two-factor engine,
and the OAuth2 grant handler.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/config.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
