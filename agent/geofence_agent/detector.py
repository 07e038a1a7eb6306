"""
TransitionDetector — turns location samples into geofence enter/exit events.

Per zone:   OUTSIDE --(sample inside)--> INSIDE --(sample outside)--> OUTSIDE

  - The first sample of a session only seeds state. Launching the agent while
    already on site does not produce a false "enter".
  - Zones that vanish from the registry (deleted, deactivated, membership
    revoked) produce one implicit "exit" if we were inside, then are forgotten.
  - One sample contributes at most one transition per zone.
  - Optional hysteresis: with dwell_samples=N a transition needs N consecutive
    disagreeing samples. N=1 reproduces plain edge detection.

The containment map is owned by this instance and only touched from the
thread that calls on_sample() (the app's main loop).
"""

from .config import log
from .geo import is_inside
from .models import AttendanceEvent, ContainmentState, EventType, utc_now


class TransitionDetector:
    """Edge detector over (zone -> containment) for one tracking session."""

    def __init__(self, registry, emit=None, user_id=None, dwell_samples=1):
        if dwell_samples < 1:
            raise ValueError("dwell_samples must be >= 1")
        self._registry = registry
        self._emit = emit
        self._user_id = user_id
        self._dwell = int(dwell_samples)
        self._states = {}      # zone_id -> ContainmentState
        self._pending = {}     # zone_id -> consecutive disagreeing samples
        self._seeded = False

    # ── State ────────────────────────────────────────────────

    @property
    def seeded(self):
        return self._seeded

    def states(self):
        return dict(self._states)

    def reset(self):
        """Forget everything (tracking stopped). The next sample re-seeds."""
        self._states.clear()
        self._pending.clear()
        self._seeded = False

    def _tracked_zones(self):
        zones = self._registry.current_zones()
        if self._user_id is None:
            return list(zones)
        return [z for z in zones if z.is_member(self._user_id)]

    # ── Sample processing ────────────────────────────────────

    def on_sample(self, sample, observed_at=None):
        """Classify one sample. Returns the events emitted (possibly empty)."""
        observed_at = observed_at or utc_now()
        zones = self._tracked_zones()

        if not self._seeded:
            for zone in zones:
                self._states[zone.zone_id] = _classify(sample, zone)
            self._seeded = True
            inside = [z.zone_id for z in zones if self._states[z.zone_id] is ContainmentState.INSIDE]
            log.info("Detector seeded with %d zones (inside: %s)", len(zones), ", ".join(inside) or "none")
            return []

        # Each change is (zone_id, new_state or None to forget, event or None).
        changes = []
        present = set()

        for zone in zones:
            zone_id = zone.zone_id
            present.add(zone_id)
            observed = _classify(sample, zone)
            current = self._states.get(zone_id)

            if current is None:
                # Zone added since seeding: starts OUTSIDE like any fresh zone.
                current = ContainmentState.OUTSIDE
                self._states[zone_id] = current

            if observed is current:
                self._pending.pop(zone_id, None)
                continue

            count = self._pending.get(zone_id, 0) + 1
            if count < self._dwell:
                self._pending[zone_id] = count
                continue

            kind = (EventType.GEOFENCE_ENTER if observed is ContainmentState.INSIDE
                    else EventType.GEOFENCE_EXIT)
            event = AttendanceEvent(type=kind, location=sample, zone_id=zone_id,
                                    observed_at=observed_at)
            changes.append((zone_id, observed, event))

        for zone_id, state in list(self._states.items()):
            if zone_id in present:
                continue
            event = None
            if state is ContainmentState.INSIDE:
                log.info("Zone %s no longer available while inside — implicit exit", zone_id)
                event = AttendanceEvent(type=EventType.GEOFENCE_EXIT, location=sample,
                                        zone_id=zone_id, observed_at=observed_at)
            changes.append((zone_id, None, event))

        emitted = []
        for zone_id, new_state, event in changes:
            # Emit first: if the sink fails the state is left untouched and
            # the same transition is detected again on the next sample.
            if event is not None:
                if self._emit is not None:
                    self._emit(event)
                emitted.append(event)
                log.info("Geofence %s: %s", event.type.value.split("_")[1], zone_id)
            self._pending.pop(zone_id, None)
            if new_state is None:
                self._states.pop(zone_id, None)
            else:
                self._states[zone_id] = new_state

        return emitted


def _classify(sample, zone):
    return ContainmentState.INSIDE if is_inside(sample, zone) else ContainmentState.OUTSIDE
