"""Authentication infrastructure.

This package provides:
- tokens: session token and device/user code generation
- github: GitHub as the external identity provider (device flow client)
- device_flow: server-side device authorization coordinator
- poll_status: poll outcomes shared with the client
"""
