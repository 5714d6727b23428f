"""
Instance Registry - In-Memory Map of Agent Sessions
====================================================

The single source of truth for live instances in this process.
Synchronous on purpose: a read followed by a write in the same callback
can never interleave with another coroutine.
"""

import logging
from typing import Dict, List, Optional

from ..domain.models import Instance

logger = logging.getLogger(__name__)


class InstanceRegistry:
    """agent_id -> Instance, insertion ordered."""

    def __init__(self):
        self._instances: Dict[int, Instance] = {}

    def get(self, agent_id: int) -> Optional[Instance]:
        return self._instances.get(agent_id)

    def list(self) -> List[Instance]:
        """Snapshot of all instances in insertion order."""
        return list(self._instances.values())

    def add(self, instance: Instance) -> Instance:
        """Insert a new instance, replacing any entry for the same agent."""
        self._instances[instance.agent_id] = instance
        return instance

    def upsert(self, agent_id: int, **patch) -> Instance:
        """
        Merge fields into the agent's instance, creating it if absent.
        Fields not named in the patch keep their value.
        """
        instance = self._instances.get(agent_id)
        if instance is None:
            instance = Instance(agent_id=agent_id, **patch)
            self._instances[agent_id] = instance
            return instance

        for name, value in patch.items():
            if not hasattr(instance, name):
                raise AttributeError(f"Instance has no field '{name}'")
            setattr(instance, name, value)
        return instance

    def remove(self, agent_id: int) -> Optional[Instance]:
        return self._instances.pop(agent_id, None)

    def __contains__(self, agent_id: int) -> bool:
        return agent_id in self._instances

    def __len__(self) -> int:
        return len(self._instances)
