"""Model bases shared by the config sections and runtime state.

Kept out of config.py so log.py can build on them without importing
the full configuration.
"""

from __future__ import annotations

import sys
from typing import Protocol, runtime_checkable

from pydantic import BaseModel


@runtime_checkable
class Closeable(Protocol):
    def close(self) -> None: ...


class BaseCloseable(BaseModel):
    """Model that closes whatever Closeable values its fields hold.

    Closing Config therefore closes the Logger, which closes each
    sink's processor and file. One failing child does not stop the
    others from being closed.
    """

    def close(self):
        for name in self.__class__.model_fields:
            child = getattr(self, name, None)
            if not isinstance(child, Closeable):
                continue
            try:
                child.close()
            except Exception as e:
                print(f"Warning: error closing {name}: {e}", file=sys.stderr)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class BaseConfig(BaseCloseable):
    """Base for sections loaded from YAML, environment and CLI."""


class BaseState(BaseCloseable):
    """Base for state that only exists while a command runs."""


__all__ = ["Closeable", "BaseCloseable", "BaseConfig", "BaseState"]
