"""UFW firewall rule install and removal."""
from __future__ import annotations

import ipaddress
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..errors import ConfigurationError
from ..milestones import MilestoneTable
from ..models import EntityKind
from ..steps import Command, Milestone, Step, quote
from .base import BuildContext, Operation, delete_entity, mark_active

FIREWALL_RULES = EntityKind.FIREWALL_RULE.collection
ACTIONS = ("allow", "deny")
PROTOCOLS = ("tcp", "udp", "any")
_PORT = re.compile(r"^(\d{1,5})(?:[:-](\d{1,5}))?$")

VERIFY_COMMANDS = (
    'which ufw >/dev/null 2>&1 || (echo "UFW is not installed" && exit 1)',
    'ufw status | grep -q "Status: active" || (echo "UFW is not enabled" && exit 1)',
)


@dataclass(frozen=True, slots=True)
class FirewallRule:
    """A validated UFW rule."""

    port: str
    action: str = "allow"
    protocol: str = "tcp"
    source: str | None = None
    destination: str | None = None
    comment: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FirewallRule:
        """Validate raw rule settings; raise :class:`ConfigurationError` on bad input."""
        port = _normalize_port(data.get("port"))
        action = str(data.get("action") or data.get("rule_type") or "allow").lower()
        if action not in ACTIONS:
            raise ConfigurationError(f"Firewall action must be one of {', '.join(ACTIONS)}.")
        protocol = str(data.get("protocol") or "tcp").lower()
        if protocol not in PROTOCOLS:
            raise ConfigurationError(f"Firewall protocol must be one of {', '.join(PROTOCOLS)}.")
        if ":" in port and protocol == "any":
            raise ConfigurationError(f"Firewall port range {port} needs a tcp or udp protocol.")
        comment = data.get("comment") or data.get("name")
        return cls(
            port=port,
            action=action,
            protocol=protocol,
            source=_normalize_address(data.get("source") or data.get("from_ip_address"), "source"),
            destination=_normalize_address(data.get("destination") or data.get("to_ip_address"), "destination"),
            comment=str(comment) if comment else None,
        )

    def to_dict(self) -> dict[str, object]:
        """Return the rule as stored in a record's configuration."""
        return {
            "port": self.port,
            "action": self.action,
            "protocol": self.protocol,
            "source": self.source,
            "destination": self.destination,
            "comment": self.comment,
        }


def _normalize_port(value: object) -> str:
    text = str(value).strip() if value is not None else ""
    match = _PORT.match(text)
    if not match:
        raise ConfigurationError(f"Firewall port '{text}' must be a port or a range like 3000:3005.")
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else None
    for number in (start, end):
        if number is not None and not 1 <= number <= 65535:
            raise ConfigurationError(f"Firewall port {number} is out of range.")
    if end is None:
        return str(start)
    if end < start:
        raise ConfigurationError(f"Firewall port range {start}:{end} is reversed.")
    return f"{start}:{end}"


def _normalize_address(value: object, label: str) -> str | None:
    if value is None or str(value).strip() in ("", "any"):
        return None
    text = str(value).strip()
    try:
        return str(ipaddress.ip_network(text, strict=False)) if "/" in text else str(ipaddress.ip_address(text))
    except ValueError as exc:
        raise ConfigurationError(f"Firewall {label} '{text}' is not a valid IP address or CIDR.") from exc


def ufw_rule(rule: FirewallRule) -> str:
    """Return the ufw rule arguments (without the leading ``ufw``)."""
    if rule.source is None and rule.destination is None:
        text = f"{rule.action} {rule.port}" if rule.protocol == "any" else f"{rule.action} {rule.port}/{rule.protocol}"
    else:
        parts = [rule.action]
        if rule.source is not None:
            parts.extend(["from", rule.source, "to", rule.destination or "any"])
        else:
            parts.extend(["to", rule.destination or "any"])
        parts.extend(["port", rule.port])
        if rule.protocol != "any":
            parts.extend(["proto", rule.protocol])
        text = " ".join(parts)
    if rule.comment:
        text += f" comment {quote(rule.comment)}"
    return text


def build_ufw_rule(data: Mapping[str, Any], *, delete: bool = False) -> str:
    """Return the full ufw command for raw rule settings."""
    rule = FirewallRule.from_mapping(data)
    prefix = "ufw delete" if delete else "ufw"
    return f"{prefix} {ufw_rule(rule)}"


def _rule_settings(record: Mapping[str, Any]) -> Mapping[str, Any]:
    configuration = record.get("configuration") or {}
    if not configuration:
        raise ConfigurationError("At least one firewall rule must be provided")
    return configuration


FIREWALL_RULE_INSTALL_MILESTONES = MilestoneTable(
    "firewall_rule_install",
    [
        ("verify_firewall", "Verifying firewall"),
        ("apply_rules", "Applying firewall rules"),
        ("reload_firewall", "Reloading firewall"),
        ("complete", "Firewall rules applied"),
    ],
)


def build_firewall_rule_install(record: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Apply one rule with ufw and reload."""
    command = build_ufw_rule(_rule_settings(record))
    return [
        Milestone("verify_firewall"),
        *(Command(text) for text in VERIFY_COMMANDS),
        Milestone("apply_rules"),
        Command(command),
        Milestone("reload_firewall"),
        Command("ufw reload"),
        Command("ufw status numbered"),
        Milestone("complete"),
        mark_active(ctx, FIREWALL_RULES),
    ]


FIREWALL_RULE_REMOVE_MILESTONES = MilestoneTable(
    "firewall_rule_remove",
    [
        ("verify_firewall", "Verifying firewall"),
        ("remove_rules", "Removing firewall rules"),
        ("reload_firewall", "Reloading firewall"),
        ("complete", "Firewall rules removed"),
    ],
)


def build_firewall_rule_remove(record: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Delete one rule from ufw and drop the record."""
    command = build_ufw_rule(_rule_settings(record), delete=True)
    return [
        Milestone("verify_firewall"),
        *(Command(text) for text in VERIFY_COMMANDS),
        Milestone("remove_rules"),
        Command(command),
        Milestone("reload_firewall"),
        Command("ufw reload"),
        Milestone("complete"),
        delete_entity(ctx, FIREWALL_RULES),
    ]


FIREWALL_RULE_INSTALL = Operation(
    name="firewall_rule_install",
    kind=EntityKind.FIREWALL_RULE,
    milestones=FIREWALL_RULE_INSTALL_MILESTONES,
    build=build_firewall_rule_install,
)

FIREWALL_RULE_REMOVE = Operation(
    name="firewall_rule_remove",
    kind=EntityKind.FIREWALL_RULE,
    milestones=FIREWALL_RULE_REMOVE_MILESTONES,
    build=build_firewall_rule_remove,
    removal=True,
)


__all__ = [
    "FIREWALL_RULE_INSTALL",
    "FIREWALL_RULE_INSTALL_MILESTONES",
    "FIREWALL_RULE_REMOVE",
    "FIREWALL_RULE_REMOVE_MILESTONES",
    "FirewallRule",
    "build_firewall_rule_install",
    "build_firewall_rule_remove",
    "build_ufw_rule",
    "ufw_rule",
]
