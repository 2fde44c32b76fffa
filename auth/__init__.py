"""auth/ -- Authentication and credential-lifecycle package for Aperture Studio CRM.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around; the signing secret and
other settings are injected by api/main.py at startup.
"""
