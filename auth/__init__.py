"""auth/ -- Authentication package for the helpdesk.

Layer rule: auth/ imports stdlib, third-party libraries, and core/ only.
It does NOT import from api/, desk/, or cache/.
api/ imports from auth/, not the other way around.
"""
