"""
Control registry mapping (standard, control) pairs to runbook factories.

Factories are registered once while the process is composed and looked up
many times at dispatch. Lookup is an exact, case-sensitive match and never
modifies the registry, so concurrent resolution needs no locking.

Usage:
    from sharr.registry import ControlRegistry

    registry = ControlRegistry()
    registry.register("NIST80053", "EC2.19", high_risk_ports_runbook)
    registry.freeze()

    document = registry.resolve("NIST80053", "EC2.19", props)
"""

import re
import threading
from collections.abc import Callable, Iterator, Mapping

from sharr.errors import (
    ConfigurationError,
    DuplicateRegistrationError,
    InvalidControlIdError,
    RegistryFrozenError,
    UnknownControlError,
)
from sharr.logging_config import get_logger, log_with_context
from sharr.models import PlaybookProperties
from sharr.runbook import RunbookDocument

logger = get_logger(__name__)

RunbookFactory = Callable[[str, PlaybookProperties], RunbookDocument]

# Dotted control numbering such as EC2.19, 4.1 or PCI.AutoScaling.1
DEFAULT_CONTROL_PATTERN = r"^[A-Za-z0-9]+(\.[A-Za-z0-9]+)+$"


class ControlRegistry:
    """
    Registry of runbook factories keyed by (standard_id, control_id).

    Attributes:
        control_patterns: Per-standard regular expressions control ids must
            match; standards without an entry use DEFAULT_CONTROL_PATTERN
    """

    def __init__(self, control_patterns: Mapping[str, str] | None = None) -> None:
        self.control_patterns: dict[str, str] = dict(control_patterns or {})
        self._factories: dict[tuple[str, str], RunbookFactory] = {}
        self._lock: threading.Lock = threading.Lock()
        self._frozen: bool = False

    def register(self, standard_id: str, control_id: str, factory: RunbookFactory) -> None:
        """
        Register a runbook factory.

        Args:
            standard_id: Compliance standard (e.g. NIST80053)
            control_id: Control within the standard (e.g. EC2.19)
            factory: Callable building a RunbookDocument for the control

        Raises:
            DuplicateRegistrationError: If the pair is already registered
            InvalidControlIdError: If the control id breaks the numbering scheme
            RegistryFrozenError: If the registry no longer accepts registrations
        """
        pattern = self.control_patterns.get(standard_id, DEFAULT_CONTROL_PATTERN)
        if not re.fullmatch(pattern, control_id):
            raise InvalidControlIdError(standard_id, control_id, pattern)

        key = (standard_id, control_id)
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(standard_id, control_id)
            if key in self._factories:
                raise DuplicateRegistrationError(standard_id, control_id)
            self._factories[key] = factory

        log_with_context(
            logger,
            "debug",
            "Registered control runbook",
            standard_id=standard_id,
            control_id=control_id,
        )

    def freeze(self) -> None:
        """Stop accepting registrations."""
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(
        self,
        standard_id: str,
        control_id: str,
        props: PlaybookProperties,
    ) -> RunbookDocument:
        """
        Instantiate the runbook document for a control.

        Args:
            standard_id: Compliance standard of the finding
            control_id: Control of the finding
            props: Shared playbook properties to bind the document to

        Returns:
            A fresh RunbookDocument for this invocation

        Raises:
            UnknownControlError: If no factory is registered for the pair
            ConfigurationError: If the factory builds a document for another control
        """
        factory = self._factories.get((standard_id, control_id))
        if factory is None:
            log_with_context(
                logger,
                "warning",
                "No runbook registered for control",
                standard_id=standard_id,
                control_id=control_id,
            )
            raise UnknownControlError(standard_id, control_id)

        document = factory(control_id, props)
        if document.control_id != control_id:
            raise ConfigurationError(
                f"Factory for {standard_id}/{control_id} built a runbook for {document.control_id}",
                config_key=f"{standard_id}/{control_id}",
                reason="factory returned a document for a different control",
            )

        log_with_context(
            logger,
            "debug",
            "Resolved control runbook",
            standard_id=standard_id,
            control_id=control_id,
            step_count=len(document.steps),
        )
        return document

    def is_registered(self, standard_id: str, control_id: str) -> bool:
        return (standard_id, control_id) in self._factories

    def standards(self) -> list[str]:
        """Registered standards, sorted."""
        return sorted({standard for standard, _ in self._factories})

    def controls(self, standard_id: str | None = None) -> list[tuple[str, str]]:
        """Registered (standard, control) pairs, optionally for one standard."""
        return sorted(
            key for key in self._factories if standard_id is None or key[0] == standard_id
        )

    def __contains__(self, key: object) -> bool:
        return key in self._factories

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self.controls())

    def __len__(self) -> int:
        return len(self._factories)
