"""HTTP API for the auth server (FastAPI).

The app factory lives in fido_auth.api.server. It is not imported here so
the client can use fido_auth.api.schemas without loading the server stack.
Collaborator routes protect themselves with fido_auth.api.deps.SessionUserDep.
"""
