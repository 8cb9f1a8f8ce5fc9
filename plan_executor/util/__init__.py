from .logging import setup_logging
from .fs import atomic_write_text, ensure_dir, ensure_state_dir, remove_path
from .manifest import stable_timestamp, write_manifest
from .timing import log_timing

__all__ = [
    "setup_logging",
    "atomic_write_text",
    "ensure_dir",
    "ensure_state_dir",
    "remove_path",
    "stable_timestamp",
    "write_manifest",
    "log_timing",
]
