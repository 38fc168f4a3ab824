"""secure/ -- Symmetric envelope cryptography and one-time codes for Konabra.

Protector mints tamper-evident, time-bounded tokens and short codes used by
account verification, contact-change and password-reset flows. CodeProvider
produces RFC 6238 time-based codes.

Layer rule: secure/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/, auth/, or cache/.
"""
