from typing import Any, Generic, Protocol, TypeVar

T = TypeVar("T")


class RegistryFrozenError(RuntimeError):
    """Raised when registering into a frozen registry."""


class Registry(Generic[T]):
    """
    Name to implementation mapping populated at startup.

    Outside development the registry is frozen once the application is wired,
    so the set of implementations cannot change while serving.
    """

    def __init__(self, kind: str):
        self.kind = kind
        self._entries: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Add or replace the implementation registered under ``name``."""
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register {self.kind.lower()} '{name}': registry is frozen"
            )
        self._entries[name] = implementation

    def get(self, name: str) -> T:
        try:
            return self._entries[name]
        except KeyError:
            raise KeyError(
                f"No {self.kind.lower()} implementation registered with name: {name}"
            ) from None

    def names(self) -> list[str]:
        return sorted(self._entries)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class JobHandler(Protocol):
    """Executes started jobs of one name."""

    async def handle(self, job: Any) -> None:
        """
        Execute a started job.

        Handlers persist their own terminal state. Raising marks the job as
        failed with the error recorded in its output data.
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry mapping job names to their handlers."""

    def __init__(self):
        super().__init__("Job")


job_registry = JobRegistry()
