"""auth/ -- Session tokens, the request gate, and user persistence.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, web/, or projects/.
projects/, api/ and web/ import from auth/, not the other way around.
"""
