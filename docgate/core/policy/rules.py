"""Subject and state filters for action policies.

A policy's ``subjects`` restrict which actors it applies to and its
``state_constraints`` restrict which document states it applies to.
Both are optional; an absent filter matches everything.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional


@dataclass
class Actor:
    """
    The authenticated caller, as resolved by the auth layer.

    Read-only input to policy evaluation; never persisted.
    """
    user_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    group_ids: List[str] = field(default_factory=list)
    # Secondary group identities (e.g. accounting groups)
    group_account_ids: List[str] = field(default_factory=list)

    @property
    def all_group_ids(self) -> List[str]:
        return list(dict.fromkeys([*self.group_ids, *self.group_account_ids]))

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Actor":
        """Create an actor from a (possibly camelCase) mapping."""
        return cls(
            user_id=normalize_string(pick(data, "user_id", "userId")),
            roles=normalize_string_list(pick(data, "roles")),
            group_ids=normalize_string_list(pick(data, "group_ids", "groupIds")),
            group_account_ids=normalize_string_list(
                pick(data, "group_account_ids", "groupAccountIds")
            ),
        )


def pick(mapping: Optional[Mapping], *keys: str) -> Any:
    """Return the first non-None value found under any of ``keys``."""
    if not isinstance(mapping, Mapping):
        return None
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def normalize_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_string_list(value: Any) -> List[str]:
    """Coerce a scalar or iterable into a list of non-blank strings."""
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = [value]
    elif isinstance(value, (list, tuple, set)):
        items = value
    else:
        return []
    result = []
    for item in items:
        text = normalize_string(item)
        if text:
            result.append(text)
    return result


def matches_subjects(subjects: Optional[Mapping], actor: Actor) -> bool:
    """
    Check if an actor satisfies a subject filter.

    The filter lists ``roles``, ``group_ids`` and ``user_ids``; the actor
    matches when it satisfies any one of the non-empty lists.
    """
    if not subjects:
        return True
    if not isinstance(subjects, Mapping):
        return False

    roles = normalize_string_list(pick(subjects, "roles"))
    group_ids = normalize_string_list(pick(subjects, "group_ids", "groupIds"))
    user_ids = normalize_string_list(pick(subjects, "user_ids", "userIds"))

    if not roles and not group_ids and not user_ids:
        return True

    if roles and any(role in actor.roles for role in roles):
        return True
    if group_ids and any(gid in actor.all_group_ids for gid in group_ids):
        return True
    if user_ids and actor.user_id and actor.user_id in user_ids:
        return True
    return False


def matches_state_constraints(constraints: Optional[Mapping], state: Optional[Mapping]) -> bool:
    """
    Check if a document state satisfies ``status_in`` / ``status_not_in``.

    A missing state is not checked; callers that want state filtering
    must pass the persisted state of the target.
    """
    if not constraints or state is None:
        return True
    if not isinstance(constraints, Mapping):
        return False

    status = normalize_string(pick(state, "status"))
    status_in = normalize_string_list(pick(constraints, "status_in", "statusIn"))
    status_not_in = normalize_string_list(pick(constraints, "status_not_in", "statusNotIn"))

    if status_in and status not in status_in:
        return False
    if status_not_in and status in status_not_in:
        return False
    return True
