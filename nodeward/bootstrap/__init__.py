"""Declarative join-script DSL.

Composable shell operations and the join scripts built from them.

Example:
    >>> from nodeward.bootstrap import JoinParameters, render_join_script
    >>>
    >>> script = render_join_script("k3s", JoinParameters(
    ...     endpoint="https://10.0.0.1:6443",
    ...     token="K10...",
    ...     labels={"pool": "workers"},
    ... ))
"""

from __future__ import annotations

from .compose import Op, bootstrap, resolve
from .join import JoinParameters, SecretReader, render_join_script, resolve_join_script
from .ops import apt, checkpoint, file, run_commands, ufw

__all__ = [
    # Composition
    "Op",
    "bootstrap",
    "resolve",
    # Operations
    "apt",
    "checkpoint",
    "file",
    "run_commands",
    "ufw",
    # Join scripts
    "JoinParameters",
    "SecretReader",
    "render_join_script",
    "resolve_join_script",
]
