"""mail/ -- Outbound email for one-time codes.

Layer rule: mail/ imports only stdlib, third-party libraries, and core/.
api/ imports from mail/, not the other way around.
"""
