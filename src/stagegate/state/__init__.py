from stagegate.state.checkpoints import (
    Change,
    CheckpointStore,
    FilesystemCheckpointStore,
    GitCheckpointStore,
    build_checkpoint_store,
)
from stagegate.state.store import StateStore

__all__ = [
    "Change",
    "CheckpointStore",
    "FilesystemCheckpointStore",
    "GitCheckpointStore",
    "StateStore",
    "build_checkpoint_store",
]
