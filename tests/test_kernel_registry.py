"""
Tests for kernel identity detection and family classification.
"""

import json
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from titan_zfs.kernel.registry import FamilyRule, KernelFamilyRegistry
from titan_zfs.kernel.variants import KERNEL_RELEASE_ENV, KERNEL_UNAME_ENV, KernelIdentity
from titan_zfs.shared import KernelFamily


class TestKernelIdentity:
    def test_from_release_splits_version_and_variant(self) -> None:
        identity = KernelIdentity.from_release("5.15.90.1-microsoft-standard-WSL2")

        assert identity.version == "5.15.90.1"
        assert identity.variant == "microsoft-standard-WSL2"
        assert identity.family is KernelFamily.UNCLASSIFIED

    def test_release_without_suffix(self) -> None:
        identity = KernelIdentity.from_release("6.1.0\n")
        assert identity.release == "6.1.0"
        assert identity.variant == "6.1.0"

    def test_empty_release_rejected(self) -> None:
        with pytest.raises(ValueError, match="Kernel release cannot be empty"):
            KernelIdentity.from_release("")

    def test_identity_is_immutable(self) -> None:
        identity = KernelIdentity.from_release("5.4.0-42-generic")
        with pytest.raises(AttributeError):
            identity.release = "other"  # type: ignore[misc]

    def test_upstream_version_strips_wsl_suffix(self) -> None:
        assert KernelIdentity.from_release("5.15.90.1-microsoft-standard-WSL2").upstream_version == "5.15.90.1"

    def test_detect_uses_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(KERNEL_RELEASE_ENV, "4.19.76-linuxkit")
        monkeypatch.setenv(KERNEL_UNAME_ENV, "Linux docker-desktop 4.19.76-linuxkit #1 SMP x86_64 GNU/Linux")

        with patch("titan_zfs.kernel.variants.SysCommand") as mock_syscmd:
            identity = KernelIdentity.detect()

        mock_syscmd.assert_not_called()
        assert identity.release == "4.19.76-linuxkit"
        assert identity.variant == "linuxkit"

    @patch("titan_zfs.kernel.variants.SysCommand")
    def test_detect_runs_uname(self, mock_syscmd: Mock, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(KERNEL_RELEASE_ENV, raising=False)
        monkeypatch.delenv(KERNEL_UNAME_ENV, raising=False)
        mock_syscmd.return_value.decode.side_effect = ["5.4.0-42-generic\n", "Linux host 5.4.0-42-generic #46-Ubuntu SMP\n"]

        identity = KernelIdentity.detect()

        assert identity.release == "5.4.0-42-generic"
        assert identity.uname == "Linux host 5.4.0-42-generic #46-Ubuntu SMP"
        assert [c.args[0] for c in mock_syscmd.call_args_list] == ["uname -r", "uname -a"]


class TestClassification:
    """Test the built-in classification table."""

    def setup_method(self) -> None:
        self.registry = KernelFamilyRegistry()

    @pytest.mark.parametrize(
        ("release", "uname", "family"),
        [
            ("4.19.76-linuxkit", "Linux docker-desktop 4.19.76-linuxkit #1 SMP", KernelFamily.VIRTUALIZED_CONTAINER),
            ("5.15.90.1-microsoft-standard-WSL2", "Linux host 5.15.90.1-microsoft-standard-WSL2 #1 SMP", KernelFamily.VIRTUALIZED_NO_MODULE),
            ("4.4.0-19041-Microsoft", "Linux host 4.4.0-19041-Microsoft #488-Microsoft", KernelFamily.WINDOWS_SUBSYSTEM),
            ("5.4.0-42-generic", "Linux host 5.4.0-42-generic #46-Ubuntu SMP", KernelFamily.DISTRIBUTION_STANDARD),
            ("4.18.0-193.el8.x86_64", "Linux host 4.18.0-193.el8.x86_64 #1 SMP", KernelFamily.DISTRIBUTION_ENTERPRISE),
            ("4.18.0-80.el8_0.x86_64", "Linux host 4.18.0-80.el8_0.x86_64 #1 SMP", KernelFamily.DISTRIBUTION_ENTERPRISE),
            ("6.12.0-55.el10.x86_64", "Linux host 6.12.0-55.el10.x86_64 #1 SMP", KernelFamily.DISTRIBUTION_ENTERPRISE),
            ("4.4.0-19041", "Linux host 4.4.0-19041 #488-Microsoft", KernelFamily.WINDOWS_SUBSYSTEM),
            ("6.9.7-arch1-1", "Linux host 6.9.7-arch1-1 #1 SMP PREEMPT_DYNAMIC", KernelFamily.UNCLASSIFIED),
        ],
    )
    def test_classify(self, release: str, uname: str, family: KernelFamily) -> None:
        identity = KernelIdentity.from_release(release, uname)
        assert self.registry.classify(identity) is family
        assert self.registry.identify(identity).family is family

    def test_only_wsl2_lacks_dynamic_modules(self) -> None:
        for family in KernelFamily:
            expected = family is not KernelFamily.VIRTUALIZED_NO_MODULE
            assert KernelFamilyRegistry.supports_dynamic_modules(family) is expected


class TestKernelFamilyRegistry:
    def setup_method(self) -> None:
        self.registry = KernelFamilyRegistry()

    def test_registered_rule_takes_precedence(self) -> None:
        rule = FamilyRule("custom-ubuntu", "uname", r"Ubuntu", KernelFamily.VIRTUALIZED_CONTAINER)
        self.registry.register_rule(rule)

        identity = KernelIdentity.from_release("5.4.0-42-generic", "Linux host 5.4.0-42-generic #46-Ubuntu SMP")
        assert self.registry.classify(identity) is KernelFamily.VIRTUALIZED_CONTAINER

    def test_rule_appended_last_does_not_override(self) -> None:
        rule = FamilyRule("late", "uname", r"Ubuntu", KernelFamily.VIRTUALIZED_CONTAINER)
        self.registry.register_rule(rule, first=False)

        identity = KernelIdentity.from_release("5.4.0-42-generic", "Linux host #46-Ubuntu SMP")
        assert self.registry.classify(identity) is KernelFamily.DISTRIBUTION_STANDARD

    def test_register_rule_replaces_same_name(self) -> None:
        count = len(self.registry.rules)
        self.registry.register_rule(FamilyRule("ubuntu", "uname", r"Debian", KernelFamily.DISTRIBUTION_STANDARD))
        assert len(self.registry.rules) == count
        assert self.registry.rules[0].pattern == "Debian"

    def test_unknown_attribute_rejected(self) -> None:
        with pytest.raises(ValueError, match="unknown attribute"):
            FamilyRule("bad", "hostname", r".*", KernelFamily.UNCLASSIFIED)

    def test_load_from_file(self, tmp_path: Path) -> None:
        config = tmp_path / "kernel-families.json"
        rule = FamilyRule("flatcar", "release", r"flatcar", KernelFamily.VIRTUALIZED_CONTAINER)
        config.write_text(json.dumps({"kernel_families": [rule.to_dict()]}))

        self.registry.load_from_file(config)

        assert self.registry.rules[0].name == "flatcar"
        assert self.registry.classify(KernelIdentity.from_release("5.15.0-flatcar")) is KernelFamily.VIRTUALIZED_CONTAINER

    def test_load_from_missing_file_keeps_defaults(self, tmp_path: Path) -> None:
        before = [r.name for r in self.registry.rules]
        self.registry.load_from_file(tmp_path / "missing.json")
        assert [r.name for r in self.registry.rules] == before

    def test_load_from_invalid_file_is_ignored(self, tmp_path: Path) -> None:
        config = tmp_path / "kernel-families.json"
        config.write_text(json.dumps({"kernel_families": [{"name": "broken"}]}))
        before = [r.name for r in self.registry.rules]

        self.registry.load_from_file(config)

        assert [r.name for r in self.registry.rules] == before

    def test_str(self) -> None:
        assert "wsl2: variant ~ ^microsoft-standard -> virtualized-no-module" in str(self.registry)
