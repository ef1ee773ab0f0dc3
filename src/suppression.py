"""
Diff Suppression Engine.

Decides, per attribute, whether a difference between a declared value and a
remote (or previously applied) value is meaningful, or an artifact of the
server normalizing or defaulting the value.
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set


class SuppressionRule:
    """
    A pure predicate over (declared, remote) for one attribute.

    When preserve_declared is set, a suppressed remote value is not written
    back into state; the declared value is kept instead.
    """

    name = "rule"
    preserve_declared = False

    def suppress(self, declared: Any, remote: Any) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class CaseInsensitive(SuppressionRule):
    """Values that differ only in letter case are equivalent."""

    name = "case_insensitive"

    def suppress(self, declared: Any, remote: Any) -> bool:
        if not isinstance(declared, str) or not isinstance(remote, str):
            return False
        return declared.casefold() == remote.casefold()


@dataclass(frozen=True)
class EmptyMeansDefault(SuppressionRule):
    """An empty declared value is equivalent to the service's default."""

    default: str

    name = "empty_means_default"
    preserve_declared = True

    def suppress(self, declared: Any, remote: Any) -> bool:
        return declared in (None, "") and remote == self.default


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


class SuppressionEngine:
    """
    Per-kind collection of suppression rules and write-only attributes.

    Write-only attributes are never returned by a read, so they are excluded
    from diffing against remote values entirely. Between two declared
    descriptors they still count as changed; that is how a password change is
    noticed.
    """

    def __init__(
        self,
        rules: Optional[Mapping[str, Iterable[SuppressionRule]]] = None,
        write_only: Iterable[str] = (),
    ):
        self.rules: Dict[str, List[SuppressionRule]] = {
            attr: list(attr_rules) for attr, attr_rules in (rules or {}).items()
        }
        self.write_only: FrozenSet[str] = frozenset(write_only)

    def rules_for(self, attribute: str) -> List[SuppressionRule]:
        return self.rules.get(attribute, [])

    def should_suppress(self, attribute: str, declared: Any, remote: Any) -> bool:
        """
        Decide whether a declared/remote difference is not actionable.

        Args:
            attribute: Attribute name.
            declared: Value the caller declared (or last applied).
            remote: Value observed on the remote service.

        Returns:
            True if the difference should be ignored.
        """
        if attribute in self.write_only:
            return True
        if declared == remote or (_is_empty(declared) and _is_empty(remote)):
            return True
        return any(rule.suppress(declared, remote) for rule in self.rules_for(attribute))

    def differs(self, attribute: str, old: Any, new: Any) -> bool:
        """Whether two declared values differ in a way that needs pushing."""
        if old == new or (_is_empty(old) and _is_empty(new)):
            return False
        if attribute in self.write_only:
            return True
        return not any(rule.suppress(new, old) for rule in self.rules_for(attribute))

    def changed_attributes(
        self, old: Mapping[str, Any], new: Mapping[str, Any]
    ) -> Set[str]:
        """Names of attributes whose change between old and new is meaningful."""
        return {
            attr
            for attr in set(old) | set(new)
            if self.differs(attr, old.get(attr), new.get(attr))
        }

    def drifted_attributes(
        self, declared: Mapping[str, Any], observed: Mapping[str, Any]
    ) -> Set[str]:
        """Declared attributes whose observed value is a real drift."""
        return {
            attr
            for attr, value in declared.items()
            if attr in observed
            and not self.should_suppress(attr, value, observed.get(attr))
        }

    def merge_read(
        self, previous: Mapping[str, Any], remote: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """
        Compute the attributes to persist after a read.

        Attributes missing from the remote record and write-only attributes
        keep their previous value. A remote value suppressed by a
        preserve_declared rule keeps the previously applied value; every
        other remote value is taken as-is.
        """
        merged = dict(previous)
        for attr, remote_value in remote.items():
            if attr in self.write_only:
                continue
            prior = previous.get(attr)
            if any(
                rule.preserve_declared and rule.suppress(prior, remote_value)
                for rule in self.rules_for(attr)
            ):
                continue
            merged[attr] = remote_value
        return merged
