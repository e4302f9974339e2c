import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)

class ClientLockManager:
    """
    Serializes chunk persistence per client.

    SKIP and OVERRIDE look up existing products before writing, so two
    imports for the same client must not interleave their chunks. Imports
    for different clients run in parallel.
    """
    _locks: Dict[int, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, client_id: int) -> threading.Lock:
        """Get or create the lock for a client."""
        with cls._global_lock:
            if client_id not in cls._locks:
                cls._locks[client_id] = threading.Lock()
            return cls._locks[client_id]

    @classmethod
    @contextmanager
    def acquire(cls, client_id: int):
        """Context manager holding the client's lock for the duration of the block."""
        lock = cls.get_lock(client_id)
        if not lock.acquire(blocking=False):
            logger.info(f"Waiting for another import of client {client_id} to finish its chunk")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()
