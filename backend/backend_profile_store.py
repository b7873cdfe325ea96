# backend/profile_store.py - Profile persistence over the configuration store

import json
import re
from typing import List, Dict, Any, Optional, Tuple
import logging

from pydantic import ValidationError

from backend_database import Database
from backend_models import Profile, ProfileFilter, ProfileExport, new_id
from backend_config import settings

logger = logging.getLogger(__name__)

PROFILE_SUB_TYPE = "profile"

class ProfileStoreError(Exception):
    pass

class ProfileNotFoundError(ProfileStoreError):
    pass

class ProfileLockedError(ProfileStoreError):
    pass

class ProfileImportError(ProfileStoreError):
    pass


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "profile"


class ProfileStoreAdapter:
    """The only writer of persisted profiles.

    Reads degrade to ``None`` or ``[]`` when the store fails; writes raise
    ``ProfileStoreError`` so the caller can report the failure.
    """

    def __init__(self, db: Database, component_type: Optional[str] = None):
        self.db = db
        self.component_type = component_type or settings.COMPONENT_TYPE

    async def save(self, profile: Profile) -> str:
        """Create the profile, or update it if a record with its id exists"""
        try:
            existing = await self.db.get(profile.id, include_deleted=True)
        except Exception as e:
            logger.error(f"Failed to look up profile {profile.id}: {e}")
            raise ProfileStoreError(f"Failed to save profile: {e}") from e

        if existing and not existing["isDeleted"] and existing["config"].get("isLocked"):
            raise ProfileLockedError(f"Profile {profile.id} is locked")

        record = self._to_record(profile)
        try:
            if existing:
                # saving over a soft-deleted record restores it
                await self.db.update(profile.id, {**record, "isDeleted": False, "deletedAt": None},
                                     include_deleted=True)
                logger.info(f"Profile updated: {profile.name} ({profile.id})")
            else:
                await self.db.create(record)
                logger.info(f"Profile created: {profile.name} ({profile.id})")
        except Exception as e:
            logger.error(f"Failed to save profile {profile.id}: {e}")
            raise ProfileStoreError(f"Failed to save profile: {e}") from e
        return profile.id

    async def get(self, profile_id: str) -> Optional[Profile]:
        try:
            record = await self.db.get(profile_id)
        except Exception as e:
            logger.error(f"Failed to load profile {profile_id}: {e}")
            return None
        if not record or record["componentType"] != self.component_type:
            return None
        return self._from_record(record)

    async def update(self, profile_id: str, partial: Dict[str, Any]) -> Profile:
        """Merge a partial profile into the stored one.

        A locked profile only accepts a change of ``isLocked`` itself.
        """
        existing = await self._get_for_write(profile_id, "update")
        if existing.isLocked and set(partial) - {"isLocked"}:
            raise ProfileLockedError(f"Profile {profile_id} is locked")

        try:
            merged = Profile.model_validate({**existing.model_dump(), **partial, "id": profile_id})
        except ValidationError as e:
            raise ProfileStoreError(f"Invalid profile update: {e}") from e

        try:
            await self.db.update(profile_id, self._to_record(merged))
        except Exception as e:
            logger.error(f"Failed to update profile {profile_id}: {e}")
            raise ProfileStoreError(f"Failed to update profile: {e}") from e
        return merged

    async def delete(self, profile_id: str) -> bool:
        existing = await self._get_for_write(profile_id, "delete")
        if existing.isLocked:
            raise ProfileLockedError(f"Profile {profile_id} is locked")
        try:
            deleted = await self.db.delete(profile_id)
        except Exception as e:
            logger.error(f"Failed to delete profile {profile_id}: {e}")
            raise ProfileStoreError(f"Failed to delete profile: {e}") from e
        logger.info(f"Profile deleted: {profile_id}")
        return deleted

    async def query(self, profile_filter: Optional[ProfileFilter] = None) -> List[Profile]:
        profile_filter = profile_filter or ProfileFilter()
        try:
            records = await self.db.query({
                "componentType": self.component_type,
                "componentSubType": PROFILE_SUB_TYPE,
                "instanceId": profile_filter.instanceId,
                "name": profile_filter.name,
                "includeDeleted": profile_filter.includeDeleted,
            })
        except Exception as e:
            logger.error(f"Failed to query profiles: {e}")
            return []

        profiles = [self._from_record(record) for record in records]
        if profile_filter.dataSourceId is not None:
            profiles = [p for p in profiles if p.dataSourceId == profile_filter.dataSourceId]
        if profile_filter.isDefault is not None:
            profiles = [p for p in profiles if p.isDefault == profile_filter.isDefault]
        return profiles

    async def get_default(self, instance_id: str) -> Optional[Profile]:
        defaults = await self.query(ProfileFilter(instanceId=instance_id, isDefault=True))
        return defaults[0] if defaults else None

    async def set_default(self, profile_id: str) -> Profile:
        """Make one profile the default of its instance, clearing the others"""
        profile = await self._get_for_write(profile_id, "update")
        for other in await self.query(ProfileFilter(instanceId=profile.instanceId, isDefault=True)):
            if other.id != profile_id:
                await self.update(other.id, {"isDefault": False})
        return await self.update(profile_id, {"isDefault": True})

    async def save_as(self, profile: Profile, name: str) -> Profile:
        copy = profile.model_copy(deep=True, update={
            "id": new_id(),
            "name": name,
            "isDefault": False,
            "isLocked": False,
            "createdAt": None,
            "updatedAt": None,
            "isDeleted": False,
        })
        await self.save(copy)
        return await self.get(copy.id) or copy

    # Export / import
    async def export_profile(self, profile_id: str) -> Tuple[str, str]:
        profile = await self.get(profile_id)
        if profile is None:
            raise ProfileNotFoundError(f"Profile {profile_id} not found")
        document = ProfileExport(componentType=self.component_type, profile=profile)
        return f"{slugify(profile.name)}.json", json.dumps(document.model_dump(mode="json"), indent=2)

    async def import_profile(self, text: str, instance_id: Optional[str] = None) -> Profile:
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ProfileImportError(f"Import file is not valid JSON: {e}") from e

        try:
            document = ProfileExport.model_validate(data)
        except ValidationError as e:
            raise ProfileImportError(f"Import file is not a profile export: {e}") from e

        if document.componentType != self.component_type:
            raise ProfileImportError(
                f"Profile was exported from {document.componentType}, expected {self.component_type}"
            )

        updates: Dict[str, Any] = {"isDeleted": False}
        if instance_id:
            updates["instanceId"] = instance_id
        profile = document.profile.model_copy(update=updates)
        await self.save(profile)
        logger.info(f"Profile imported: {profile.name} ({profile.id})")
        return await self.get(profile.id) or profile

    # Helpers
    async def _get_for_write(self, profile_id: str, action: str) -> Profile:
        try:
            record = await self.db.get(profile_id)
        except Exception as e:
            logger.error(f"Failed to look up profile {profile_id}: {e}")
            raise ProfileStoreError(f"Failed to {action} profile: {e}") from e
        if not record or record["componentType"] != self.component_type:
            raise ProfileNotFoundError(f"Profile {profile_id} not found")
        return self._from_record(record)

    def _to_record(self, profile: Profile) -> Dict[str, Any]:
        return {
            "id": profile.id,
            "componentType": self.component_type,
            "componentSubType": PROFILE_SUB_TYPE,
            "instanceId": profile.instanceId,
            "name": profile.name,
            "config": profile.model_dump(mode="json", exclude={"id", "createdAt", "updatedAt", "isDeleted"}),
        }

    def _from_record(self, record: Dict[str, Any]) -> Profile:
        return Profile.model_validate({
            **record["config"],
            "id": record["id"],
            "name": record["name"],
            "instanceId": record["instanceId"],
            "createdAt": record["createdAt"],
            "updatedAt": record["updatedAt"],
            "isDeleted": record["isDeleted"],
        })
