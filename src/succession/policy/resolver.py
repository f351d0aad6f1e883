"""Policy resolver — loads governance_params.json and runtime_policy.json
and exposes every runtime decision as a typed method call.

No magic. If a value is missing from the config, it fails loud.

The role → capability table lives here, not in the workflow. The workflow
only ever asks "does this actor hold capability X?" through the
CapabilityLookup interface, which this resolver implements.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from succession.models.service_record import ServiceType
from succession.models.transition import ApprovalRole

LEAD_DAYS_ENV = "TRANSITION_WIDGET_LEAD_DAYS"


@dataclass(frozen=True)
class TermBoundary:
    """A yearly transition date (local midnight) and the term it opens."""
    month: int
    day: int
    term: str
    spans_year: bool


@dataclass(frozen=True)
class GovernancePosition:
    """The ledger role that qualifies a member for an approval role."""
    role_title: str
    service_type: ServiceType


class PolicyResolver:
    """Loads and resolves all succession policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        resolver.capabilities_for("president")
        resolver.approval_position(ApprovalRole.PRESIDENT).role_title
    """

    def __init__(self, params: dict[str, Any], policy: dict[str, Any]) -> None:
        self._params = params
        self._policy = policy
        self._validate_versions()
        self._validate_approval_roles()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        params = _load_json(config_dir / "governance_params.json")
        policy = _load_json(config_dir / "runtime_policy.json")
        return cls(params, policy)

    def _validate_versions(self) -> None:
        if "version" not in self._params:
            raise ValueError("governance_params.json missing version")
        if "version" not in self._policy:
            raise ValueError("runtime_policy.json missing version")

    def _validate_approval_roles(self) -> None:
        configured = set(self._params["approval_roles"])
        expected = {r.value for r in ApprovalRole}
        if configured != expected:
            raise ValueError(
                f"approval_roles must define exactly {sorted(expected)}, "
                f"got {sorted(configured)}"
            )

    # ------------------------------------------------------------------
    # Governance positions
    # ------------------------------------------------------------------

    def approval_position(self, role: ApprovalRole) -> GovernancePosition:
        """Ledger role title and service type behind an approval role."""
        entry = self._params["approval_roles"][role.value]
        return GovernancePosition(
            role_title=entry["role_title"],
            service_type=ServiceType(entry["service_type"]),
        )

    def widget_viewer_titles(self) -> dict[str, str]:
        """Widget role name → ledger role title, in preference order."""
        return dict(self._params["widget_viewers"])

    def override_capability(self) -> str:
        return self._params["override_capability"]

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def capabilities_for(self, role: str) -> frozenset[str]:
        """Capabilities granted to a global role. Unknown roles get none."""
        table = self._policy["role_capabilities"]
        return frozenset(table.get(role, ()))

    # ------------------------------------------------------------------
    # Transition widget and term calendar
    # ------------------------------------------------------------------

    def widget_lead_days(self) -> int:
        """Days before a transition that the countdown widget appears.

        The TRANSITION_WIDGET_LEAD_DAYS environment variable overrides the
        configured value when it holds a non-negative integer.
        """
        raw = os.environ.get(LEAD_DAYS_ENV, "").strip()
        if raw:
            try:
                value = int(raw)
            except ValueError:
                value = -1
            if value >= 0:
                return value
        return int(self._policy["transition_widget"]["lead_days"])

    def club_timezone(self) -> str:
        return self._policy["term_calendar"]["timezone"]

    def term_boundaries(self) -> list[TermBoundary]:
        boundaries = [
            TermBoundary(
                month=b["month"],
                day=b["day"],
                term=b["term"],
                spans_year=b.get("spans_year", False),
            )
            for b in self._policy["term_calendar"]["boundaries"]
        ]
        if not boundaries:
            raise ValueError("term_calendar.boundaries must not be empty")
        return sorted(boundaries, key=lambda b: (b.month, b.day))

    # ------------------------------------------------------------------
    # Runtime limits
    # ------------------------------------------------------------------

    def pagination_limits(self) -> tuple[int, int]:
        """Return (default_limit, max_limit)."""
        p = self._policy["pagination"]
        return p["default_limit"], p["max_limit"]

    def busy_timeout_seconds(self) -> float:
        return float(self._policy["database"]["busy_timeout_seconds"])


def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
