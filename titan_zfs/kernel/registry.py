"""
Kernel family registry.

This module provides the KernelFamilyRegistry class, an ordered table of
pattern rules that classifies a KernelIdentity into a KernelFamily. Rules are
evaluated top to bottom and the first match wins, so new host types can be
supported by registering a rule instead of editing control flow.
"""

from __future__ import annotations

import contextlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from archinstall import debug, info, warn

from titan_zfs.shared import KernelFamily

from .variants import KernelIdentity

_MATCHABLE_ATTRIBUTES = ("release", "uname", "version", "variant")

# Kernels in these families cannot load modules at runtime; ZFS has to be
# compiled into a replacement kernel instead.
NO_DYNAMIC_MODULE_FAMILIES = frozenset({KernelFamily.VIRTUALIZED_NO_MODULE})


@dataclass
class FamilyRule:
    """A single classification rule: regex ``pattern`` searched in ``attribute``."""

    name: str
    attribute: str
    pattern: str
    family: KernelFamily
    _regex: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Kernel family rule name cannot be empty")

        if self.attribute not in _MATCHABLE_ATTRIBUTES:
            raise ValueError(f"Rule {self.name} matches unknown attribute {self.attribute!r}, expected one of {_MATCHABLE_ATTRIBUTES}")

        self._regex = re.compile(self.pattern)

    def matches(self, identity: KernelIdentity) -> bool:
        return bool(self._regex.search(getattr(identity, self.attribute)))

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "attribute": self.attribute, "pattern": self.pattern, "family": self.family.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FamilyRule:
        return cls(name=data["name"], attribute=data["attribute"], pattern=data["pattern"], family=KernelFamily(data["family"]))


DEFAULT_RULES = [
    FamilyRule("linuxkit", "variant", r"^linuxkit$", KernelFamily.VIRTUALIZED_CONTAINER),
    FamilyRule("wsl2", "variant", r"^microsoft-standard", KernelFamily.VIRTUALIZED_NO_MODULE),
    FamilyRule("wsl1", "release", r"Microsoft", KernelFamily.WINDOWS_SUBSYSTEM),
    FamilyRule("wsl1-uname", "uname", r"Microsoft", KernelFamily.WINDOWS_SUBSYSTEM),
    FamilyRule("ubuntu", "uname", r"Ubuntu", KernelFamily.DISTRIBUTION_STANDARD),
    FamilyRule("enterprise", "uname", r"\.el(\d+|8_\d+)\.", KernelFamily.DISTRIBUTION_ENTERPRISE),
]


class KernelFamilyRegistry:
    """Ordered rule table for kernel family classification."""

    def __init__(self) -> None:
        self._rules: list[FamilyRule] = list(DEFAULT_RULES)

    @property
    def rules(self) -> list[FamilyRule]:
        return list(self._rules)

    def register_rule(self, rule: FamilyRule, first: bool = True) -> None:
        """Register a classification rule.

        Args:
            rule: The rule to add
            first: Evaluate the rule before the existing ones (default), so
                site-specific rules override the built-in table
        """
        self._rules = [r for r in self._rules if r.name != rule.name]
        if first:
            self._rules.insert(0, rule)
        else:
            self._rules.append(rule)
        debug(f"Registered kernel family rule: {rule.name} -> {rule.family.value}")

    def classify(self, identity: KernelIdentity) -> KernelFamily:
        for rule in self._rules:
            if rule.matches(identity):
                debug(f"Kernel {identity.release} matched rule {rule.name}")
                return rule.family
        return KernelFamily.UNCLASSIFIED

    def identify(self, identity: KernelIdentity) -> KernelIdentity:
        """Return a copy of ``identity`` with its family filled in."""
        return identity.with_family(self.classify(identity))

    @staticmethod
    def supports_dynamic_modules(family: KernelFamily) -> bool:
        return family not in NO_DYNAMIC_MODULE_FAMILIES

    def load_from_file(self, config_path: Path) -> None:
        """Load extra rules from a JSON file of the form {"kernel_families": [...]}."""
        if not config_path.exists():
            debug(f"Kernel family config not found: {config_path}")
            return

        try:
            data = json.loads(config_path.read_text())
            for rule_data in data.get("kernel_families", []):
                self.register_rule(FamilyRule.from_dict(rule_data))
            info(f"Loaded kernel family rules from {config_path}")
        except (OSError, ValueError, KeyError) as e:
            warn(f"Failed to load kernel family rules from {config_path}: {e}")

    def __str__(self) -> str:
        rule_list = "\n".join(f"  - {r.name}: {r.attribute} ~ {r.pattern} -> {r.family.value}" for r in self._rules)
        return f"KernelFamilyRegistry with {len(self._rules)} rules:\n{rule_list}"


_global_registry: KernelFamilyRegistry | None = None


def get_kernel_registry() -> KernelFamilyRegistry:
    """Get the global kernel family registry instance."""
    global _global_registry
    if _global_registry is None:
        _global_registry = KernelFamilyRegistry()

        config_paths = [Path("/etc/titan-zfs/kernel-families.json"), Path.home() / ".config" / "titan-zfs" / "kernel-families.json"]

        for config_path in config_paths:
            with contextlib.suppress(OSError):
                _global_registry.load_from_file(config_path)

    return _global_registry
