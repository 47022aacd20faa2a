"""auth/ -- Credential store, one-time codes, token lifecycle, and auth workflows.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or mail/. api/ wires a mail/ sender into
AuthService at startup.
"""
