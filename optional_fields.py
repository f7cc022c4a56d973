"""
Optional event field providers for map-feed output.

A provider contributes an ordered list of extra per-event columns (title +
computed value) appended to each map-feed record. Providers are injected
through export settings; at most one is active for a given export.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

if TYPE_CHECKING:
    # event_export imports this module; runtime import would be circular
    from event_export.data_models import Device, EventRecord


class OptionalFieldProvider(ABC):
    """
    Abstract base class for optional event field providers.

    Subclasses must implement:
        - field_count(is_fleet): Number of extra fields for the given mode
        - field_title(index, is_fleet, locale): Column title
        - field_value(index, is_fleet, locale, event, device): Column value

    Example:
        class OdometerField(OptionalFieldProvider):
            def field_count(self, is_fleet):
                return 1

            def field_title(self, index, is_fleet, locale):
                return "Odometer"

            def field_value(self, index, is_fleet, locale, event, device):
                return f"{event.odometer_km:.1f}"
    """

    @abstractmethod
    def field_count(self, is_fleet: bool) -> int:
        """Return the number of optional fields for fleet or single-device maps."""
        pass

    @abstractmethod
    def field_title(self, index: int, is_fleet: bool, locale: str) -> str:
        """Return the display title of the optional field at ``index``."""
        pass

    @abstractmethod
    def field_value(
        self,
        index: int,
        is_fleet: bool,
        locale: str,
        event: EventRecord,
        device: Optional[Device] = None,
    ) -> str:
        """Return the (unencoded) value of the optional field at ``index``."""
        pass

    def titles(self, is_fleet: bool, locale: str) -> List[str]:
        """All field titles in provider-declared order."""
        return [self.field_title(i, is_fleet, locale) for i in range(self.field_count(is_fleet))]

    def values(
        self,
        is_fleet: bool,
        locale: str,
        event: EventRecord,
        device: Optional[Device] = None,
    ) -> List[str]:
        """All field values for one event in provider-declared order."""
        return [
            self.field_value(i, is_fleet, locale, event, device)
            for i in range(self.field_count(is_fleet))
        ]


class NoOptionalFields(OptionalFieldProvider):
    """Provider that contributes nothing."""

    def field_count(self, is_fleet: bool) -> int:
        return 0

    def field_title(self, index: int, is_fleet: bool, locale: str) -> str:
        return ""

    def field_value(self, index, is_fleet, locale, event, device=None) -> str:
        return ""


ValueSource = Union[str, Callable[["EventRecord", Optional["Device"]], object]]


@dataclass(frozen=True)
class OptionalField:
    """One optional column: a title and an event attribute name or callable."""
    title: str
    source: ValueSource

    def resolve(self, event: EventRecord, device: Optional[Device]) -> str:
        if callable(self.source):
            value = self.source(event, device)
        else:
            value = getattr(event, self.source, None)
            if value is None:
                value = event.extra.get(self.source)
        return "" if value is None else str(value)


class AttributeOptionalFields(OptionalFieldProvider):
    """
    Provider backed by fixed column lists, one for fleet maps and one for
    single-device maps. Missing attributes yield empty values.
    """

    def __init__(
        self,
        fleet_fields: Sequence[OptionalField] = (),
        device_fields: Optional[Sequence[OptionalField]] = None,
    ):
        self._fleet_fields = tuple(fleet_fields)
        self._device_fields = tuple(device_fields) if device_fields is not None else self._fleet_fields

    def _fields(self, is_fleet: bool) -> Tuple[OptionalField, ...]:
        return self._fleet_fields if is_fleet else self._device_fields

    def field_count(self, is_fleet: bool) -> int:
        return len(self._fields(is_fleet))

    def field_title(self, index: int, is_fleet: bool, locale: str) -> str:
        fields = self._fields(is_fleet)
        if 0 <= index < len(fields):
            return fields[index].title
        return ""

    def field_value(self, index, is_fleet, locale, event, device=None) -> str:
        fields = self._fields(is_fleet)
        if 0 <= index < len(fields):
            return fields[index].resolve(event, device)
        return ""


class OptionalFieldRegistry:
    """
    Named catalog of providers a caller can choose one from.

    Example:
        registry = OptionalFieldRegistry()
        registry.register('driver', AttributeOptionalFields([OptionalField('Driver', 'driver_id')]))
        provider = registry.get('driver')
    """

    def __init__(self):
        self._providers: Dict[str, OptionalFieldProvider] = {}
        self._order: List[str] = []

    def register(self, name: str, provider: OptionalFieldProvider) -> None:
        """
        Register a provider with a unique name.

        Args:
            name: Unique identifier for this provider
            provider: Provider instance to register
        """
        if name not in self._providers:
            self._order.append(name)
        self._providers[name] = provider

    def unregister(self, name: str) -> Optional[OptionalFieldProvider]:
        """Remove a provider by name, returning it (or None if not found)."""
        if name in self._providers:
            self._order.remove(name)
            return self._providers.pop(name)
        return None

    def get(self, name: str) -> Optional[OptionalFieldProvider]:
        """Get a provider by name."""
        return self._providers.get(name)

    def names(self) -> List[str]:
        return list(self._order)

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self) -> Iterator[Tuple[str, OptionalFieldProvider]]:
        for name in self._order:
            yield name, self._providers[name]


def default_registry() -> OptionalFieldRegistry:
    """Registry with the built-in providers selectable from the CLI."""
    registry = OptionalFieldRegistry()
    registry.register("none", NoOptionalFields())
    registry.register("driver", AttributeOptionalFields([
        OptionalField("Driver", "driver_id"),
        OptionalField("Message", "driver_message"),
    ]))
    registry.register("engine", AttributeOptionalFields(
        fleet_fields=[OptionalField("Battery", "battery_volts")],
        device_fields=[
            OptionalField("RPM", "engine_rpm"),
            OptionalField("Engine Hours", "engine_hours"),
            OptionalField("Battery", "battery_volts"),
        ],
    ))
    return registry
