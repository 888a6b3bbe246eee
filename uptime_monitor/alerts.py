"""
Per-target alert state tracking for Uptime Monitor.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from uptime_monitor.logger import get_logger, log_alert_decision
from uptime_monitor.models import AlertDecision, Observation


@dataclass
class AlertState:
    """Last known classification of one target."""

    last_known_up: bool = False
    has_observation: bool = False


def decide(previous: Optional[AlertState], is_up: bool) -> AlertDecision:
    """
    Decide whether an observation is a reportable transition.

    A target seen for the first time only alerts when it is down. After
    that only changes of state alert.
    """
    if previous is None or not previous.has_observation:
        return AlertDecision.NONE if is_up else AlertDecision.FIRST_OBSERVATION_DOWN

    if previous.last_known_up and not is_up:
        return AlertDecision.BECAME_DOWN
    if not previous.last_known_up and is_up:
        return AlertDecision.BECAME_UP
    return AlertDecision.NONE


class AlertStateTracker:
    """
    In-memory state store keyed by target id.

    Each target has its own lock so concurrent probes of different targets
    never wait on each other, while two evaluations of the same target are
    applied one after the other. State is not persisted: after a restart
    every target starts from Unknown again.
    """

    def __init__(self) -> None:
        self.logger = get_logger("alerts")
        self._states: Dict[str, AlertState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, target_id: str) -> asyncio.Lock:
        lock = self._locks.get(target_id)
        if lock is None:
            lock = self._locks[target_id] = asyncio.Lock()
        return lock

    async def evaluate(self, target_id: str, observation: Observation) -> AlertDecision:
        """
        Evaluate an observation and record it as the target's new state.

        Args:
            target_id: Target the observation belongs to
            observation: Completed probe outcome

        Returns:
            Alert decision for this observation
        """
        async with self._lock_for(target_id):
            previous = self._states.get(target_id)
            decision = decide(previous, observation.is_up)
            self._states[target_id] = AlertState(
                last_known_up=observation.is_up, has_observation=True
            )

        if decision.should_alert:
            log_alert_decision(self.logger, target_id, decision.value)
        return decision

    def get_state(self, target_id: str) -> Optional[AlertState]:
        return self._states.get(target_id)

    def prune(self, valid_target_ids: Iterable[str]) -> List[str]:
        """
        Forget targets that are no longer registered.

        Returns:
            Ids of the forgotten targets
        """
        valid = set(valid_target_ids)
        stale = []
        for target_id in self._states:
            lock = self._locks.get(target_id)
            if target_id not in valid and not (lock and lock.locked()):
                stale.append(target_id)
        for target_id in stale:
            del self._states[target_id]
            self._locks.pop(target_id, None)

        if stale:
            self.logger.debug(f"Pruned alert state for {len(stale)} removed targets")
        return stale

    def snapshot(self) -> Dict[str, str]:
        """Current state per target, for health reporting."""
        return {
            target_id: "up" if state.last_known_up else "down"
            for target_id, state in self._states.items()
        }
