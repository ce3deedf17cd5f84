"""Environment lifecycle: the state machine owning named environments and their
persisted descriptors."""
