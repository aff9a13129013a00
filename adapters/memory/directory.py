"""In-memory subject directory: profiles, care relationships and emergency contacts."""

from collections import defaultdict

import structlog

from caredispatch.domain.errors import NotFound
from caredispatch.domain.models import EmergencyContact, SubjectProfile

logger = structlog.get_logger(__name__)


class InMemoryDirectory:
    """Implements both RecipientResolver and ProfileStore."""

    def __init__(self) -> None:
        self._profiles: dict[str, SubjectProfile] = {}
        self._caregivers: dict[str, list[str]] = defaultdict(list)
        self._providers: dict[str, list[str]] = defaultdict(list)
        self._contacts: dict[str, EmergencyContact] = {}

    def add_profile(
        self, subject_id: str, display_name: str, push_token: str | None = None
    ) -> SubjectProfile:
        profile = SubjectProfile(
            subject_id=subject_id, display_name=display_name, push_token=push_token
        )
        self._profiles[subject_id] = profile
        return profile

    def link_caregiver(self, subject_id: str, caregiver_id: str) -> None:
        if caregiver_id not in self._caregivers[subject_id]:
            self._caregivers[subject_id].append(caregiver_id)

    def link_provider(self, subject_id: str, provider_id: str) -> None:
        if provider_id not in self._providers[subject_id]:
            self._providers[subject_id].append(provider_id)

    def set_emergency_contact(self, subject_id: str, name: str, phone: str) -> EmergencyContact:
        contact = EmergencyContact(name=name, phone=phone)
        self._contacts[subject_id] = contact
        return contact

    async def get_profile(self, subject_id: str) -> SubjectProfile:
        profile = self._profiles.get(subject_id)
        if profile is None:
            logger.debug("profile_not_found", subject_id=subject_id)
            raise NotFound("subject not found", subject_id=subject_id)
        return profile

    async def resolve_caregivers(self, subject_id: str) -> list[str]:
        return list(self._caregivers.get(subject_id, []))

    async def resolve_providers(self, subject_id: str) -> list[str]:
        return list(self._providers.get(subject_id, []))

    async def resolve_emergency_contact(self, subject_id: str) -> EmergencyContact | None:
        return self._contacts.get(subject_id)
