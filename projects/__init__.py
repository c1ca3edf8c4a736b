"""projects/ -- Project persistence, memberships, and the tenancy resolver.

Layer rule: projects/ may import from auth/ and core/.
It does NOT import from api/ or web/.
"""
