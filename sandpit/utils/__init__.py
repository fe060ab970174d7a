from sandpit.utils.concurrency import AtomicCounter, KeyedRegistry

__all__ = ["AtomicCounter", "KeyedRegistry"]
