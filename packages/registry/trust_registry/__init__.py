"""
Trust Registry

Identity and trust stores for a multi-tenant platform: access tokens,
organization memberships and invitations, linked external accounts and a
TLS certificate cache.
"""

__version__ = "0.1.0"
