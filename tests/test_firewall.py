"""Tests for UFW rule validation and rendering."""
from __future__ import annotations

import pytest

from forgectl.errors import ConfigurationError
from forgectl.packages.firewall import FirewallRule, build_ufw_rule


@pytest.mark.parametrize(
    ("data", "expected"),
    [
        ({"port": "22"}, "ufw allow 22/tcp"),
        ({"port": 53, "protocol": "udp", "action": "deny"}, "ufw deny 53/udp"),
        ({"port": "3000-3005", "protocol": "udp"}, "ufw allow 3000:3005/udp"),
        (
            {"port": "3306", "source": "10.0.0.0/8"},
            "ufw allow from 10.0.0.0/8 to any port 3306 proto tcp",
        ),
        (
            {"port": "443", "to_ip_address": "203.0.113.5", "protocol": "any"},
            "ufw allow to 203.0.113.5 port 443",
        ),
        (
            {"port": "8080", "rule_type": "deny", "from_ip_address": "192.0.2.1", "name": "block scanner"},
            "ufw deny from 192.0.2.1 to any port 8080 proto tcp comment 'block scanner'",
        ),
    ],
)
def test_rule_rendering(data: dict[str, object], expected: str) -> None:
    """Rules render to the ufw grammar."""
    assert build_ufw_rule(data) == expected


def test_delete_prefix() -> None:
    """Removal mirrors the install rule under ``ufw delete``."""
    assert build_ufw_rule({"port": "80"}, delete=True) == "ufw delete allow 80/tcp"


def test_addresses_are_normalised() -> None:
    """Host bits in CIDRs are dropped and ``any`` means no restriction."""
    rule = FirewallRule.from_mapping({"port": "22", "source": "10.1.2.3/8", "destination": "any"})

    assert rule.source == "10.0.0.0/8"
    assert rule.destination is None


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"port": "0"},
        {"port": "70000"},
        {"port": "22; reboot"},
        {"port": "3005:3000"},
        {"port": "3000:3005", "protocol": "any"},
        {"port": "3000:3005", "protocol": "any", "source": "10.0.0.0/8"},
        {"port": "22", "action": "reject"},
        {"port": "22", "protocol": "icmp"},
        {"port": "22", "source": "999.1.1.1"},
        {"port": "22", "destination": "example.com"},
    ],
)
def test_invalid_rules_are_rejected(data: dict[str, object]) -> None:
    """Bad ports, actions, protocols and addresses never reach ufw."""
    with pytest.raises(ConfigurationError):
        FirewallRule.from_mapping(data)


def test_to_dict_round_trips_settings() -> None:
    """Stored settings rebuild the same rule."""
    rule = FirewallRule.from_mapping({"port": "25", "comment": "mail"})

    assert FirewallRule.from_mapping(rule.to_dict()) == rule
