"""Authentication module (JWT bearer tokens).

Tokens are verified in two places:
- the socket ``authenticate`` event (``app.chat.session``)
- the REST dependency ``get_current_user`` (``app.auth.dependencies``)

Services:
    - TokenService: issue and verify HS256 access tokens.
"""
