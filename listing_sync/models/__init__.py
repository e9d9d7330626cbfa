from .apply_checkpoint import ApplyCheckpoint
