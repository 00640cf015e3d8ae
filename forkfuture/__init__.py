"""forkfuture - process-based futures built on fork.

Example:

    import forkfuture

    f = forkfuture.submit(slow_thing, 42)
    ... do other stuff ...
    print(f.result())

    with forkfuture.ForkPool(max_tasks=4) as pool:
        squares = pool.map(lambda x: x * x, range(10))
"""

# Logging is disabled on import of this module (library behavior)
from forkfuture.logging import LogConfig, disable_logging, enable_logging

# Errors
from forkfuture.exceptions import (
    ChildError,
    ConfigurationError,
    ForkFutureError,
    ResultTypeError,
    TransportError,
)

# Futures and pools
from forkfuture.future import ForkFuture
from forkfuture.pool import (
    ForkPool,
    all_done,
    default_pool,
    max_tasks,
    set_max_tasks,
    submit,
    wait_for_all,
)

# Configuration
from forkfuture.config import PoolConfig, load_config, resolve_pool

__all__ = [
    # Futures and pools
    "ForkFuture",
    "ForkPool",
    "all_done",
    "default_pool",
    "max_tasks",
    "set_max_tasks",
    "submit",
    "wait_for_all",
    # Errors
    "ChildError",
    "ConfigurationError",
    "ForkFutureError",
    "ResultTypeError",
    "TransportError",
    # Configuration
    "PoolConfig",
    "load_config",
    "resolve_pool",
    # Logging
    "LogConfig",
    "disable_logging",
    "enable_logging",
]
