from threading import Lock
from typing import Any


class SingletonMeta(type):
    """Metaclass that hands out one shared instance per class.

    Used for process-wide resources such as the database driver manager.
    """

    _instances: dict[type, Any] = {}
    _lock: Lock = Lock()

    def __call__(cls, *args: Any, **kwargs: Any) -> Any:
        with cls._lock:
            if cls not in cls._instances:
                cls._instances[cls] = super().__call__(*args, **kwargs)
        return cls._instances[cls]

    def reset(cls) -> None:
        """Forget the shared instance so the next call builds a fresh one."""
        with cls._lock:
            cls._instances.pop(cls, None)
