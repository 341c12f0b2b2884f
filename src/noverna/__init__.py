"""
Noverna Core: persistence, caching and schema migrations for the Noverna
game server.

Subpackages
-----------
- ``noverna.core``        configuration, logging, exceptions, adapters, boot
- ``noverna.storage``     cache-aside storages and their registry
- ``noverna.migrations``  forward-only SQL migrations
- ``noverna.services``    admission checks and player-facing messages
"""

__version__ = "0.4.0"
