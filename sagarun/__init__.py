"""
sagarun - Registry-driven saga orchestration engine.

Runs multi-step business processes described as DAGs of nodes, each
delegating to an external procedure, with idempotent replay, compensating
rollback and per-resource mutual exclusion.
"""

__version__ = "0.1.0"

from .config import PLATFORM_TENANT_ID, ConfigError, SagarunConfig, get_sagarun_home, load_config

__all__ = [
    "__version__",
    "PLATFORM_TENANT_ID",
    "ConfigError",
    "SagarunConfig",
    "get_sagarun_home",
    "load_config",
]
