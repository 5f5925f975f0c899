"""
Static contact directory for SafeWatch.

Contacts come from settings (user id → list of contact dicts). Used for
single-site deployments and tests.
"""

from typing import Dict, List

from safewatch.core.models import Contact


class StaticContactDirectory:
    """설정 기반 연락처 디렉터리"""

    def __init__(self, contacts: Dict[str, List[dict]] | None = None):
        self._contacts: Dict[str, List[Contact]] = {
            user_id: [Contact.model_validate(c) for c in entries]
            for user_id, entries in (contacts or {}).items()
        }

    def set_contacts(self, user_id: str, contacts: List[Contact]) -> None:
        self._contacts[user_id] = list(contacts)

    async def get_contacts_for_user(self, user_id: str) -> List[Contact]:
        return list(self._contacts.get(user_id, []))
