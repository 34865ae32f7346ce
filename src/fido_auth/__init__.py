"""fido-auth: session and device-flow authentication for the Fido platform."""

__version__ = "0.1.0"
