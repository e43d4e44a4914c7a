"""Deterministic handoff routing.

Rules are loaded fresh on every call and totally ordered by
``(-priority, scope, rule id)`` where location-scoped rules sort ahead of
organization-wide rules of the same priority. The first matching rule whose
target (or fallback chain) resolves to an available recipient wins.

"No rule matched" and "rules matched but nobody is available" are different
signals and raise different errors.
"""

from __future__ import annotations

import logging

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import NoAvailableRecipient, NoMatchingRule
from outreach_orchestrator.core.models import (
    Recipient,
    RoutingContext,
    RoutingExplanation,
    RoutingRule,
    RoutingTarget,
    RuleEvaluation,
    TargetKind,
)
from outreach_orchestrator.core.storage import Storage
from outreach_orchestrator.routing.conditions import conditions_match

logger = logging.getLogger(__name__)

SIGNAL_ROUTED = "routed"
SIGNAL_NO_MATCHING_RULE = "no_matching_rule"
SIGNAL_NO_AVAILABLE_RECIPIENT = "no_available_recipient"


def rule_sort_key(rule: RoutingRule) -> tuple[int, int, str]:
    return (-rule.priority, 0 if rule.location_id else 1, rule.id)


def applicable_rules(rules: list[RoutingRule], location_id: str | None) -> list[RoutingRule]:
    """Organization-wide rules plus rules scoped to ``location_id``, in evaluation order."""
    selected = [
        r for r in rules
        if r.active and (r.location_id is None or (location_id and r.location_id == location_id))
    ]
    return sorted(selected, key=rule_sort_key)


class _Scan:
    """Accumulates the outcome of one pass over the rule set."""

    def __init__(self) -> None:
        self.target: RoutingTarget | None = None
        self.matched_rule_ids: list[str] = []
        self.evaluations: list[RuleEvaluation] = []
        self.diagnostics: list[str] = []


class RoutingEngine:
    def __init__(self, db: Storage, settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()

    async def route(self, context: RoutingContext) -> RoutingTarget:
        """Resolve exactly one target for the context.

        Raises NoMatchingRule when no rule's conditions match, and
        NoAvailableRecipient when rules matched but no target resolved.
        """
        scan = await self._scan(context, stop_at_first=True)
        if scan.target is not None:
            logger.info(
                "Routed org=%s via rule %s (%s)%s",
                context.organization_id, scan.target.rule_id, scan.target.rule_name,
                " [fallback]" if scan.target.via_fallback else "",
            )
            return scan.target

        if not scan.matched_rule_ids:
            logger.error(
                "No routing rule matches for org=%s context=%s; is a catch-all rule missing?",
                context.organization_id, context.model_dump(exclude_none=True),
            )
            raise NoMatchingRule(context.organization_id, context.model_dump(exclude_none=True))

        logger.warning(
            "No available recipient for org=%s (matched rules: %s)",
            context.organization_id, ", ".join(scan.matched_rule_ids),
        )
        raise NoAvailableRecipient(context.organization_id, scan.matched_rule_ids)

    async def explain(self, context: RoutingContext) -> RoutingExplanation:
        """Evaluate every applicable rule and report the decision. No side effects."""
        scan = await self._scan(context, stop_at_first=False)
        if scan.target is not None:
            signal = SIGNAL_ROUTED
        elif scan.matched_rule_ids:
            signal = SIGNAL_NO_AVAILABLE_RECIPIENT
        else:
            signal = SIGNAL_NO_MATCHING_RULE
        return RoutingExplanation(
            target=scan.target,
            signal=signal,
            evaluations=scan.evaluations,
            diagnostics=scan.diagnostics,
        )

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    async def _scan(self, context: RoutingContext, stop_at_first: bool) -> _Scan:
        rules = await self.db.get_active_rules(context.organization_id)
        arena = {r.id: r for r in rules if r.active}
        scan = _Scan()

        for rule in applicable_rules(rules, context.location_id):
            matched = conditions_match(rule.conditions, context)
            target = None
            if matched:
                scan.matched_rule_ids.append(rule.id)
                target = await self._resolve(rule, context)
                if target is None:
                    target = await self._follow_fallbacks(rule, arena, context, scan.diagnostics)

            scan.evaluations.append(
                RuleEvaluation(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    priority=rule.priority,
                    matched=matched,
                    has_available_target=target is not None,
                )
            )
            if target is not None and scan.target is None:
                scan.target = target
                if stop_at_first:
                    break

        return scan

    async def _follow_fallbacks(
        self,
        rule: RoutingRule,
        arena: dict[str, RoutingRule],
        context: RoutingContext,
        diagnostics: list[str],
    ) -> RoutingTarget | None:
        """Walk the fallback pointers from ``rule``. Fallback conditions are not evaluated."""
        max_depth = self.settings.routing_max_fallback_depth
        visited = {rule.id}
        current = rule
        depth = 0

        while current.fallback_rule_id:
            depth += 1
            next_id = current.fallback_rule_id
            if depth > max_depth or next_id in visited:
                diagnostics.append(f"fallback_chain_too_deep:{rule.id}")
                logger.error(
                    "Fallback chain from rule %s is cyclic or deeper than %d (stopped at %s)",
                    rule.id, max_depth, next_id,
                )
                return None

            fallback = arena.get(next_id)
            if fallback is None:
                diagnostics.append(f"fallback_rule_missing:{next_id}")
                logger.warning(
                    "Rule %s points to fallback %s which is missing or inactive", current.id, next_id
                )
                return None

            visited.add(next_id)
            target = await self._resolve(fallback, context, via_fallback=True)
            if target is not None:
                return target
            current = fallback

        return None

    async def _resolve(
        self,
        rule: RoutingRule,
        context: RoutingContext,
        via_fallback: bool = False,
    ) -> RoutingTarget | None:
        if rule.target_kind == TargetKind.VOICEMAIL:
            return RoutingTarget(
                kind=TargetKind.VOICEMAIL,
                rule_id=rule.id,
                rule_name=rule.name,
                via_fallback=via_fallback,
            )

        recipient: Recipient | None = None
        if rule.target_kind == TargetKind.PERSON:
            candidate = await self.db.get_recipient(rule.target_id)
            if (
                candidate is not None
                and candidate.organization_id == context.organization_id
                and candidate.is_available
            ):
                recipient = candidate
        elif rule.target_kind == TargetKind.DEPARTMENT:
            members = await self.db.get_department_recipients(
                context.organization_id, rule.target_id
            )
            available = sorted(
                (m for m in members if m.is_available),
                key=lambda m: (-m.handoff_priority, m.id),
            )
            if available:
                recipient = available[0]

        if recipient is None:
            logger.debug("Rule %s target %s unavailable", rule.id, rule.target_id)
            return None

        return RoutingTarget(
            kind=TargetKind.PERSON,
            recipient=recipient,
            rule_id=rule.id,
            rule_name=rule.name,
            via_fallback=via_fallback,
        )
