"""
Control runbooks shipped with SHARR and the default registry.

The same runbooks serve every standard that numbers the control the same
way: AWS Foundational Security Best Practices (AFSBP), the consolidated
Security Control view (SC) and NIST 800-53 (NIST80053).
"""

import time
from collections.abc import Callable, Iterable
from functools import partial
from typing import Any

from sharr.models import PlaybookProperties
from sharr.playbooks.ec2 import high_risk_ports_runbook
from sharr.playbooks.s3 import bucket_public_access_runbook
from sharr.registry import ControlRegistry, RunbookFactory
from sharr.runbook import RunbookDocument

DEFAULT_STANDARDS: tuple[str, ...] = ("SC", "AFSBP", "NIST80053")

PLAYBOOKS: dict[str, Callable[..., RunbookDocument]] = {
    "EC2.19": high_risk_ports_runbook,
    "S3.8": bucket_public_access_runbook,
}


def _ticketed(factory: RunbookFactory) -> RunbookFactory:
    def build(control_id: str, props: PlaybookProperties) -> RunbookDocument:
        return factory(control_id, props).with_ticketing()

    return build


def build_default_registry(
    ticketed_controls: Iterable[str] = (),
    clients: Any = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ControlRegistry:
    """
    Register every shipped runbook and freeze the registry.

    Args:
        ticketed_controls: Control ids whose executions raise a ticket
        clients: Client provider passed to the runbooks (tests inject one)
        sleep: Backoff sleep function passed to the runbooks

    Returns:
        Frozen ControlRegistry
    """
    ticketed = set(ticketed_controls)
    registry = ControlRegistry()

    for standard_id in DEFAULT_STANDARDS:
        for control_id, runbook in PLAYBOOKS.items():
            factory: RunbookFactory = partial(runbook, clients=clients, sleep=sleep)
            if control_id in ticketed:
                factory = _ticketed(factory)
            registry.register(standard_id, control_id, factory)

    registry.freeze()
    return registry


__all__ = [
    "DEFAULT_STANDARDS",
    "PLAYBOOKS",
    "build_default_registry",
    "bucket_public_access_runbook",
    "high_risk_ports_runbook",
]
