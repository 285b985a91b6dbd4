"""Dependency injection container holding process-wide sandbox state."""

from __future__ import annotations

from typing import Any, Callable, TypeVar

T = TypeVar("T")


class Container:
    """
    Simple dependency injection container.

    Supports singleton and factory registrations with lazy initialization.
    Registrations may carry a teardown callback; ``close()`` runs them in
    reverse registration order so that dependents are released before the
    components they use.
    """

    def __init__(self) -> None:
        """Initialize the container."""
        self._factories: dict[type, Callable[[Container], Any]] = {}
        self._instances: dict[type, Any] = {}
        self._teardowns: list[tuple[type, Callable[[Any], None]]] = []

    def register_singleton(
        self,
        interface: type[T],
        instance: T,
        on_teardown: Callable[[T], None] | None = None,
    ) -> None:
        """
        Register a singleton instance.

        Args:
            interface: The interface/type to register
            instance: The singleton instance
            on_teardown: Optional callback invoked with the instance on close()
        """
        self._instances[interface] = instance
        if on_teardown is not None:
            self._teardowns.append((interface, on_teardown))

    def register_factory(
        self,
        interface: type[T],
        factory: Callable[[Container], T],
        on_teardown: Callable[[T], None] | None = None,
    ) -> None:
        """
        Register a factory function for lazy instantiation.

        Args:
            interface: The interface/type to register
            factory: Factory function that takes the container and returns an instance
            on_teardown: Optional callback invoked with the instance on close()
        """
        self._factories[interface] = factory
        if on_teardown is not None:
            self._teardowns.append((interface, on_teardown))

    def resolve(self, interface: type[T]) -> T:
        """
        Resolve a dependency.

        Raises:
            KeyError: If no registration exists for the interface
        """
        if interface in self._instances:
            return self._instances[interface]

        if interface in self._factories:
            instance = self._factories[interface](self)
            self._instances[interface] = instance
            return instance

        raise KeyError(f"No registration found for {interface}")

    def has(self, interface: type) -> bool:
        """Check if an interface is registered."""
        return interface in self._factories or interface in self._instances

    def close(self) -> None:
        """Run teardown callbacks for instantiated components, then clear."""
        for interface, callback in reversed(self._teardowns):
            instance = self._instances.get(interface)
            if instance is not None:
                callback(instance)
        self.clear()

    def clear(self) -> None:
        """Clear all registrations and instances."""
        self._factories.clear()
        self._instances.clear()
        self._teardowns.clear()


# Global container instance
_container: Container | None = None


def get_container() -> Container:
    """Get the global container instance."""
    global _container
    if _container is None:
        _container = Container()
    return _container


def reset_container() -> None:
    """Close and drop the global container (useful for testing)."""
    global _container
    if _container is not None:
        _container.close()
    _container = None
