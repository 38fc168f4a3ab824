"""auth/ -- Session tokens and request authentication for Konabra.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/, secure/, or cache/.
api/ imports from auth/, not the other way around.
"""
