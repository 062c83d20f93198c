"""Static routing table from session state and control id to a step kind.

Handlers are bound to ``StepKind`` members, not looked up by name, so a
registered state without a handler is rejected at registration time rather
than discovered mid-turn.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Pattern, Tuple


class StepKind(Enum):
    IDLE = "idle"
    INVITATION = "invitation"
    ACCEPT = "accept"
    DECLINE = "decline"
    RATING = "rating"
    COMMENT_DECISION = "comment_decision"
    COMMENT_YES = "comment_yes"
    COMMENT_NO = "comment_no"
    COMMENT_TEXT = "comment_text"
    LOOKUP_START = "lookup_start"
    LOOKUP_TICKET = "lookup_ticket"
    NOT_UNDERSTOOD = "not_understood"


@dataclass(frozen=True)
class Control:
    kind: StepKind
    param: Optional[int] = None


@dataclass(frozen=True)
class Route:
    kind: StepKind
    flow: Optional[str] = None
    param: Optional[int] = None
    step: Optional[int] = None  # step the control was rendered for, if encoded


NOT_UNDERSTOOD = Route(kind=StepKind.NOT_UNDERSTOOD)


@dataclass(frozen=True)
class FlowDefinition:
    """
    One conversation type's slice of the routing table.

    - states: the ordered session states the flow may occupy
    - state_kinds: state -> step kind handling free text in that state
    - controls: exact control id -> step kind and optional bound parameter
    - control_patterns: regex with a ``param`` group (and optionally a
      ``step`` group) -> step kind, for ids that embed their parameter
      (e.g. ``btn_rating_4`` or ``btn_rating_2_4``)
    """

    name: str
    states: Tuple[str, ...]
    state_kinds: Mapping[str, StepKind]
    controls: Mapping[str, Control] = field(default_factory=dict)
    control_patterns: Tuple[Tuple[Pattern[str], StepKind], ...] = ()


class StepRegistry:
    def __init__(self) -> None:
        self._flows: Dict[str, FlowDefinition] = {}
        self._state_routes: Dict[str, Route] = {}
        self._control_routes: Dict[str, Route] = {}
        self._patterns: List[Tuple[Pattern[str], StepKind, str]] = []

    def register(self, flow: FlowDefinition) -> "StepRegistry":
        if flow.name in self._flows:
            raise ValueError(f"Flow {flow.name} is already registered")

        missing = [state for state in flow.states if state not in flow.state_kinds]
        if missing:
            raise ValueError(f"Flow {flow.name} has states without a handler: {missing}")

        unknown = [state for state in flow.state_kinds if state not in flow.states]
        if unknown:
            raise ValueError(f"Flow {flow.name} maps states it does not declare: {unknown}")

        for state in flow.states:
            if state in self._state_routes:
                raise ValueError(f"State {state} is already handled by {self._state_routes[state].flow}")

        for control_id in flow.controls:
            if control_id in self._control_routes:
                raise ValueError(f"Control {control_id} is already registered")

        for pattern, _ in flow.control_patterns:
            if "param" not in pattern.groupindex:
                raise ValueError(f"Control pattern {pattern.pattern} needs a 'param' group")

        self._flows[flow.name] = flow
        for state in flow.states:
            self._state_routes[state] = Route(kind=flow.state_kinds[state], flow=flow.name)
        for control_id, control in flow.controls.items():
            self._control_routes[control_id] = Route(
                kind=control.kind, flow=flow.name, param=control.param
            )
        for pattern, kind in flow.control_patterns:
            self._patterns.append((pattern, kind, flow.name))

        return self

    def resolve(self, state: str, control_id: Optional[str] = None) -> Route:
        """Pick the route for an event: control id first, then session state.

        Unmapped controls fall through to the state route; unknown states
        resolve to NOT_UNDERSTOOD instead of raising.
        """
        if control_id:
            route = self._control_routes.get(control_id)
            if route is not None:
                return route

            for pattern, kind, flow_name in self._patterns:
                match = pattern.fullmatch(control_id)
                if match:
                    step = match.groupdict().get("step")
                    return Route(
                        kind=kind,
                        flow=flow_name,
                        param=int(match.group("param")),
                        step=int(step) if step is not None else None,
                    )

        return self._state_routes.get(state, NOT_UNDERSTOOD)

    def stats(self) -> Dict[str, int]:
        return {
            "flows": len(self._flows),
            "states": len(self._state_routes),
            "controls": len(self._control_routes) + len(self._patterns),
        }


def control_pattern(prefix: str) -> Pattern[str]:
    """Pattern for control ids ``<prefix><param>`` or ``<prefix><step>_<param>``."""
    return re.compile(re.escape(prefix) + r"(?:(?P<step>\d+)_)?(?P<param>\d+)")
