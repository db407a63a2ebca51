from cicero.worker.lock.distributed_lock import DistributedLock, LockHandle

__all__ = ["DistributedLock", "LockHandle"]
