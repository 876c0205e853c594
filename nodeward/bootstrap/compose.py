"""Bootstrap script composition.

Core types and composition functions for the join-script DSL.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Final

NODEWARD_DIR: Final = "/var/lib/nodeward"

# =============================================================================
# Core Types
# =============================================================================

type Op = str | Callable[[], str] | list[Op]
"""Operation type: either a literal string or a function returning a string."""


def resolve(op: Op | None) -> str:
    """Resolve an operation to its string representation."""
    match op:
        case str(op):
            return op
        case list(op):
            return "\n".join(resolve(o) for o in op)
        case None:
            return ""
        case _:
            return op()


# =============================================================================
# Header
# =============================================================================

HEADER: Final = f"""#!/bin/bash
set -euo pipefail

mkdir -p {NODEWARD_DIR}
exec > >(tee -a {NODEWARD_DIR}/bootstrap.log) 2>&1

export DEBIAN_FRONTEND=noninteractive
"""


# =============================================================================
# Composition
# =============================================================================


def bootstrap(*ops: Op | None, header: str = HEADER) -> str:
    """Compose operations into a complete bash user-data script.

    ``None`` entries are skipped so optional steps can be passed inline.

    Example:
        >>> script = bootstrap(
        ...     apt("curl"),
        ...     ufw(rules),
        ...     "echo joined",
        ... )
    """
    commands = [text for op in ops if op is not None and (text := resolve(op))]
    return header + "\n" + "\n\n".join(commands) + "\n"
