"""Key Activator - license key activation against a vendor commerce account.

Captures an identity token from an authenticated browser session, validates
and redeems one or many keys through region-specific egress proxies, and
reports a single terminal outcome per activation run.
"""

__version__ = "0.1.0"
