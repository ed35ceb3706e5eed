"""Output formatters for plans and apply results."""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.text import Text
from rich.tree import Tree

from driftplan.analyzer import AnalyzedPlan, Risk
from driftplan.models import (
    UNKNOWN,
    Action,
    ApplyResult,
    AttributeChange,
    OperationStatus,
)

RISK_COLORS = {
    Risk.CRITICAL: "bold red",
    Risk.HIGH: "red",
    Risk.MEDIUM: "yellow",
    Risk.LOW: "green",
}

ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
    Action.CONFLICT: "!",
    Action.NO_OP: " ",
}

STATUS_COLORS = {
    OperationStatus.SUCCEEDED: "green",
    OperationStatus.FAILED: "bold red",
    OperationStatus.BLOCKED: "red",
    OperationStatus.CANCELLED: "yellow",
}

REDACTED = "[REDACTED]"
NO_CHANGES = "No changes. Infrastructure matches the configuration."


def _escape_md_cell(value: str) -> str:
    """Escape characters that break markdown table cells."""
    return value.replace("|", "\\|").replace("\n", " ")


def _render(value: Any, sensitive: bool = False, *, redact: bool = False) -> str:
    if value is None:
        return "null"
    if value is UNKNOWN:
        return str(UNKNOWN)
    if redact or sensitive:
        return REDACTED
    return json.dumps(value, default=str, sort_keys=True)


def _json_value(value: Any, sensitive: bool, redact: bool) -> Any:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if (redact or sensitive) and value is not None:
        return REDACTED
    return value


def _change_json(change: AttributeChange, redact: bool) -> dict[str, Any]:
    return {
        "path": change.path,
        "before": _json_value(change.before, change.sensitive, redact),
        "after": _json_value(change.after, change.sensitive, redact),
        "forces_replacement": change.forces_replacement,
    }


def _summary_line(analyzed: AnalyzedPlan) -> str:
    counts = analyzed.plan.counts()
    line = (
        f"{counts[Action.CREATE]} to create, {counts[Action.UPDATE]} to update, "
        f"{counts[Action.REPLACE]} to replace, {counts[Action.DELETE]} to delete"
    )
    if counts[Action.CONFLICT]:
        line += f", {counts[Action.CONFLICT]} in conflict"
    return line


def format_json(analyzed: AnalyzedPlan, *, redact: bool = False) -> str:
    """Format a plan as JSON."""
    plan = analyzed.plan
    counts = plan.counts()
    changes = []
    for change in plan.operations:
        changes.append(
            {
                "address": str(change.address),
                "action": change.action.value,
                "resource_id": change.resource_id,
                "risk": analyzed.change_risks.get(change.address, Risk.LOW).name,
                "reason": change.reason,
                "changes": [_change_json(c, redact) for c in change.changes],
            }
        )

    return json.dumps(
        {
            "summary": {
                "create": counts[Action.CREATE],
                "update": counts[Action.UPDATE],
                "replace": counts[Action.REPLACE],
                "delete": counts[Action.DELETE],
                "conflict": counts[Action.CONFLICT],
                "no_op": counts[Action.NO_OP],
                "destructive": plan.is_destructive,
                "risk": analyzed.plan_risk.name if analyzed.plan_risk else None,
            },
            "changes": changes,
            "drift": [
                {
                    "address": str(entry.address),
                    "deleted": entry.deleted,
                    "changes": [_change_json(c, redact) for c in entry.changes],
                }
                for entry in plan.drift
            ],
            "conflicts": [
                {"address": c.address, "attributes": c.attributes, "message": str(c)}
                for c in plan.conflicts
            ],
        },
        indent=2,
        default=str,
    )


def format_markdown(analyzed: AnalyzedPlan, *, redact: bool = False) -> str:
    """Format a plan as Markdown."""
    plan = analyzed.plan
    if not plan.has_changes and not plan.drift:
        return NO_CHANGES

    risk_label = f" [{analyzed.plan_risk.name}]" if analyzed.plan_risk else ""
    lines = [f"## Plan: {_summary_line(analyzed)}{risk_label}", ""]

    if plan.operations:
        lines.append("| Resource | Action | Risk | Attribute | Before | After |")
        lines.append("|----------|--------|------|-----------|--------|-------|")
        for change in plan.operations:
            risk = analyzed.change_risks.get(change.address, Risk.LOW).name
            address = _escape_md_cell(str(change.address))
            if change.changes:
                for c in change.changes:
                    before = _escape_md_cell(_render(c.before, c.sensitive, redact=redact))
                    after = _escape_md_cell(_render(c.after, c.sensitive, redact=redact))
                    marker = " (forces replacement)" if c.forces_replacement else ""
                    lines.append(
                        f"| {address} | {change.action.value} | {risk} "
                        f"| `{_escape_md_cell(c.path)}`{marker} | `{before}` | `{after}` |"
                    )
            else:
                reason = _escape_md_cell(change.reason or "—")
                lines.append(
                    f"| {address} | {change.action.value} | {risk} | {reason} | — | — |"
                )
        lines.append("")

    if plan.drift:
        lines.append("### Drift")
        lines.append("")
        for entry in plan.drift:
            if entry.deleted:
                lines.append(f"- `{entry.address}` was deleted outside of driftplan")
            else:
                paths = ", ".join(f"`{c.path}`" for c in entry.changes)
                lines.append(f"- `{entry.address}` changed: {paths}")
        lines.append("")

    if plan.conflicts:
        lines.append("### Conflicts needing manual resolution")
        lines.append("")
        for conflict in plan.conflicts:
            lines.append(f"- {_escape_md_cell(str(conflict))}")
        lines.append("")

    return "\n".join(lines)


def format_table(analyzed: AnalyzedPlan, *, redact: bool = False) -> str:
    """Format a plan as a Rich tree view, returned as a string."""
    plan = analyzed.plan
    if not plan.has_changes and not plan.drift:
        return NO_CHANGES

    console = Console(record=True, width=120)
    tree = Tree(f"[bold]Plan[/bold] — {_summary_line(analyzed)}")

    for change in plan.operations:
        risk = analyzed.change_risks.get(change.address, Risk.LOW)
        color = RISK_COLORS.get(risk, "dim")
        reason = f" ({escape(change.reason)})" if change.reason else ""
        risk_label = escape(f"[{risk.name}]")
        branch = tree.add(
            Text.from_markup(
                f"[{color}]{ACTION_SYMBOLS[change.action]} {escape(str(change.address))}"
                f"[/{color}] — {change.action.value} {risk_label}{reason}"
            )
        )
        for c in change.changes:
            before = escape(_render(c.before, c.sensitive, redact=redact))
            after = escape(_render(c.after, c.sensitive, redact=redact))
            marker = " [red]# forces replacement[/red]" if c.forces_replacement else ""
            branch.add(
                Text.from_markup(
                    f"{escape(c.path)}: [red]{before}[/red] → [green]{after}[/green]{marker}"
                )
            )

    if plan.drift:
        drift_branch = tree.add("[yellow]Drift detected[/yellow]")
        for entry in plan.drift:
            if entry.deleted:
                drift_branch.add(f"{escape(str(entry.address))}: deleted outside of driftplan")
                continue
            entry_branch = drift_branch.add(escape(str(entry.address)))
            for c in entry.changes:
                before = escape(_render(c.before, c.sensitive, redact=redact))
                after = escape(_render(c.after, c.sensitive, redact=redact))
                entry_branch.add(f"{escape(c.path)}: {before} → {after}")

    if plan.conflicts:
        conflict_branch = tree.add("[bold red]Conflicts needing manual resolution[/bold red]")
        for conflict in plan.conflicts:
            conflict_branch.add(escape(str(conflict)))

    console.print(tree)
    return console.export_text()


def format_apply(result: ApplyResult, output_format: str = "table") -> str:
    """Format apply outcomes as a table, JSON or Markdown."""
    outcomes = sorted(result.outcomes.values(), key=lambda o: o.address.sort_key)
    operations = [o for o in outcomes if o.action != Action.NO_OP]
    counts = {status: len(result.with_status(status)) for status in OperationStatus}

    if output_format == "json":
        return json.dumps(
            {
                "ok": result.ok,
                "cancelled": result.cancelled,
                "summary": {status.value: n for status, n in counts.items() if n},
                "operations": [
                    {
                        "address": str(o.address),
                        "action": o.action.value,
                        "status": o.status.value,
                        "error": o.error,
                    }
                    for o in operations
                ],
            },
            indent=2,
        )

    title = "Apply complete" if result.ok else "Apply finished with errors"
    if result.cancelled:
        title = "Apply cancelled"
    summary = ", ".join(f"{n} {status.value}" for status, n in counts.items() if n)

    if output_format == "markdown":
        lines = [f"## {title}: {summary}", ""]
        if operations:
            lines.append("| Resource | Action | Status | Error |")
            lines.append("|----------|--------|--------|-------|")
            for o in operations:
                error = _escape_md_cell(o.error or "—")
                lines.append(
                    f"| {_escape_md_cell(str(o.address))} | {o.action.value} "
                    f"| {o.status.value} | {error} |"
                )
        return "\n".join(lines)

    console = Console(record=True, width=120)
    tree = Tree(f"[bold]{title}[/bold] — {summary}")
    for o in operations:
        color = STATUS_COLORS.get(o.status, "dim")
        error = f": {escape(o.error)}" if o.error else ""
        tree.add(
            Text.from_markup(
                f"[{color}]{escape(str(o.address))}[/{color}] — {o.action.value} "
                f"{o.status.value}{error}"
            )
        )
    console.print(tree)
    return console.export_text()
