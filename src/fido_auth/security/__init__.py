"""Security primitives: token generation, device flow, rate limiting.

Note: shared exceptions are defined in fido_auth.exceptions. Submodules are
imported directly (fido_auth.security.auth.device_flow, ...) because the
storage layer depends on fido_auth.security.auth.tokens.
"""
