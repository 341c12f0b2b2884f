"""
Configuration subsystem for Noverna Core.

Static configuration only: values are read from environment variables (with
``.env`` support) once at import and exposed as class attributes on
``Config``. Changes require a restart, except the handful of values covered
by ``Config.reload_safe_configs()``.

Usage
-----
```python
from noverna.core.config import Config

db_url = Config.DATABASE_URL
if Config.destructive_commands_allowed():
    ...
```
"""

from noverna.core.config.config import Config, Environment, LoadReport

__all__ = [
    "Config",
    "Environment",
    "LoadReport",
]
