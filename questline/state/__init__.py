"""Pure state transforms: validation, versioning, conflict merge, checkpoints.

Nothing in this package performs I/O; all functions are synchronous and
safe to call from the narrative loop on every turn.
"""

from .checkpoints import create_checkpoint, restore_checkpoint  # noqa: F401
from .conflicts import resolve  # noqa: F401
from .validator import ValidationResult, check_committed_scene, validate_state  # noqa: F401
from .versioner import (  # noqa: F401
    CURRENT_VERSION,
    StateMigrationError,
    migrate,
    migrate_record,
    stamp,
    to_game_state,
)
