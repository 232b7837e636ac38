"""
File-backed persistence for skills.
Module: m365_exec/service/skill_store.py

Each skill is stored as ``<skills_directory>/<id>.json`` (pretty JSON with
camelCase keys). Writes go through a temporary file and an atomic replace so
readers never observe a partial document. Writers of the same record are
serialized in-process by a per-identifier ``anyio.Lock``; several processes
sharing one directory are not coordinated.
"""

import json
import logging
import re
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

import anyio
from pydantic import BaseModel, ValidationError

from .models import Skill, SkillFilters, ValidationResult, utc_now
from .validator import validate_code

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "description", "code", "category")

# Fields that update() never changes.
PROTECTED_FIELDS = ("id", "created_at", "usage_count", "is_builtin")

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")

# camelCase alias -> attribute name
_FIELD_NAMES: Dict[str, str] = {
    (field.alias or name): name for name, field in Skill.model_fields.items()
}


class SkillStoreError(Exception):
    """Base exception for skill store errors."""

    pass


class SkillNotFoundError(SkillStoreError):
    """Raised when a skill cannot be resolved."""

    pass


class SkillValidationError(SkillStoreError):
    """Raised when a skill record or its parameters are invalid."""

    pass


class SkillStorageError(SkillStoreError):
    """Raised when the underlying filesystem operation fails."""

    pass


class SkillProtectedError(SkillStoreError):
    """Raised when deleting a built-in skill."""

    pass


def _normalize(data: Union[BaseModel, Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a snake_case field mapping from a model or a (possibly camelCase) dict."""
    if isinstance(data, BaseModel):
        return data.model_dump(exclude_unset=not isinstance(data, Skill))
    return {_FIELD_NAMES.get(key, key): value for key, value in data.items()}


def _missing_fields(data: Mapping[str, Any]) -> List[str]:
    return [name for name in REQUIRED_FIELDS if not data.get(name)]


class SkillStore:
    """Durable skill storage with filtering, search and usage accounting."""

    def __init__(self, skills_directory: str = "./data/skills") -> None:
        """
        Initialize the store.

        Args:
            skills_directory: Directory holding one JSON document per skill
        """
        self.skills_directory = anyio.Path(skills_directory)
        self._locks: Dict[str, anyio.Lock] = {}
        self._initialized = False

    async def init(self) -> None:
        """Create the storage directory on first use."""
        if self._initialized:
            return
        try:
            await self.skills_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SkillStorageError(f"Cannot create skills directory: {e}") from e
        self._initialized = True
        logger.info(f"Skill storage initialized at: {self.skills_directory}")

    def _lock(self, skill_id: str) -> anyio.Lock:
        lock = self._locks.get(skill_id)
        if lock is None:
            lock = self._locks[skill_id] = anyio.Lock()
        return lock

    def _path(self, skill_id: str) -> anyio.Path:
        return self.skills_directory / f"{skill_id}.json"

    # ------------------------------------------------------------------
    # Raw document I/O
    # ------------------------------------------------------------------

    async def _read(self, skill_id: str) -> Optional[Skill]:
        try:
            content = await self._path(skill_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SkillStorageError(f"Failed to read skill {skill_id}: {e}") from e

        try:
            return Skill.model_validate_json(content)
        except ValidationError as e:
            raise SkillStorageError(f"Skill document {skill_id} is corrupt: {e}") from e

    async def _write(self, skill: Skill) -> None:
        target = self._path(skill.id)
        tmp = self.skills_directory / f".{skill.id}.{uuid.uuid4().hex}.tmp"
        try:
            await tmp.write_text(json.dumps(skill.to_document(), indent=2), encoding="utf-8")
            await tmp.replace(target)
        except OSError as e:
            logger.error(f"Failed to save skill {skill.id}: {e}")
            try:
                await tmp.unlink(missing_ok=True)
            except OSError:
                logger.warning(f"Could not remove temporary file {tmp}")
            raise SkillStorageError(f"Failed to save skill {skill.id}: {e}") from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save(self, skill: Union[Skill, Mapping[str, Any]]) -> Skill:
        """
        Create or overwrite a skill.

        New records (no ``id``) are assigned an identifier, creation time and a
        zero usage count. Saving over a stored record keeps its creation time,
        usage count and built-in flag whatever the caller supplies;
        ``updated_at`` never precedes ``created_at``.

        Args:
            skill: Full Skill or partial mapping (snake_case or camelCase keys)

        Returns:
            The persisted record

        Raises:
            SkillValidationError: If required fields are missing or invalid
            SkillStorageError: If the document cannot be written
        """
        await self.init()
        data = _normalize(skill)

        missing = _missing_fields(data)
        if missing:
            raise SkillValidationError(f"Missing required skill fields: {', '.join(missing)}")

        now = utc_now()
        skill_id = data.get("id")

        if not skill_id:
            skill_id = str(uuid.uuid4())
            data.update(id=skill_id, created_at=now, updated_at=now, usage_count=0)
            if data.get("is_builtin") is None:
                data["is_builtin"] = False
            record = self._validate(data)
            async with self._lock(skill_id):
                await self._write(record)
            logger.info(f"Skill saved: {record.name} ({record.id})")
            return record

        if not _SAFE_ID.match(str(skill_id)):
            raise SkillValidationError(f"Invalid skill id: {skill_id!r}")

        async with self._lock(skill_id):
            existing = await self._read(skill_id)
            if existing is not None:
                # Identity and accounting fields always come from the stored record.
                data["created_at"] = existing.created_at
                data["usage_count"] = existing.usage_count
                data["is_builtin"] = existing.is_builtin
            else:
                data["created_at"] = now
                data["usage_count"] = 0
                if data.get("is_builtin") is None:
                    data["is_builtin"] = False
            data["updated_at"] = now
            record = self._validate(data)
            record.updated_at = max(now, record.created_at)
            await self._write(record)

        logger.info(f"Skill saved: {record.name} ({record.id})")
        return record

    @staticmethod
    def _validate(data: Mapping[str, Any]) -> Skill:
        try:
            return Skill.model_validate(data)
        except ValidationError as e:
            raise SkillValidationError(f"Invalid skill: {e}") from e

    async def get(self, skill_id: str) -> Optional[Skill]:
        """
        Get a skill by identifier.

        Args:
            skill_id: Skill ID

        Returns:
            A fresh Skill instance, or None if absent
        """
        if not skill_id or not _SAFE_ID.match(skill_id):
            return None
        await self.init()
        return await self._read(skill_id)

    async def get_by_name(self, name: str) -> Optional[Skill]:
        """Get the first skill with exactly this name."""
        for skill in await self.list():
            if skill.name == name:
                return skill
        return None

    async def resolve(self, skill_ref: str) -> Optional[Skill]:
        """Resolve a reference by identifier first, then by name."""
        return await self.get(skill_ref) or await self.get_by_name(skill_ref)

    async def list(self, filters: Optional[SkillFilters] = None) -> List[Skill]:
        """
        List skills, most used first.

        Args:
            filters: Conjunctive filters; ``tags`` matches any listed tag

        Returns:
            Matching skills sorted by usage count descending
        """
        await self.init()
        filters = filters or SkillFilters()
        skills: List[Skill] = []

        try:
            async for path in self.skills_directory.iterdir():
                if path.suffix != ".json" or path.name.startswith("."):
                    continue
                try:
                    skill = Skill.model_validate_json(await path.read_text(encoding="utf-8"))
                except FileNotFoundError:
                    # Deleted between listing and reading.
                    continue
                except (ValidationError, ValueError) as e:
                    logger.warning(f"Failed to parse skill file {path.name}: {e}")
                    continue
                if self._matches(skill, filters):
                    skills.append(skill)
        except OSError as e:
            logger.error(f"Failed to list skills: {e}")
            raise SkillStorageError(f"Failed to list skills: {e}") from e

        return sorted(skills, key=lambda s: s.usage_count, reverse=True)

    @staticmethod
    def _matches(skill: Skill, filters: SkillFilters) -> bool:
        if filters.category is not None and skill.category != filters.category:
            return False
        if filters.author is not None and skill.author != filters.author:
            return False
        if filters.is_public is not None and skill.is_public != filters.is_public:
            return False
        if filters.is_builtin is not None and bool(skill.is_builtin) != filters.is_builtin:
            return False
        if filters.tags and not any(tag in skill.tags for tag in filters.tags):
            return False
        return True

    async def delete(self, skill_id: str, allow_builtin: bool = False) -> bool:
        """
        Delete a skill.

        Args:
            skill_id: Skill ID
            allow_builtin: Permit removal of built-in skills

        Returns:
            True if the record was removed, False if it did not exist

        Raises:
            SkillProtectedError: If the record is built-in and not allowed
        """
        if not skill_id or not _SAFE_ID.match(skill_id):
            return False
        await self.init()

        async with self._lock(skill_id):
            existing = await self._read(skill_id)
            if existing is None:
                return False
            if existing.is_builtin and not allow_builtin:
                raise SkillProtectedError(f"Cannot delete built-in skill '{existing.name}'")
            try:
                await self._path(skill_id).unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise SkillStorageError(f"Failed to delete skill {skill_id}: {e}") from e

        lock = self._locks.get(skill_id)
        if lock is not None and not lock.locked() and not lock.statistics().tasks_waiting:
            del self._locks[skill_id]
        logger.info(f"Skill deleted: {skill_id}")
        return True

    async def increment_usage(self, skill_id: str) -> Optional[int]:
        """
        Atomically increment a skill's usage count.

        Returns:
            The new count, or None if the skill does not exist
        """
        if not skill_id or not _SAFE_ID.match(skill_id):
            return None
        await self.init()

        async with self._lock(skill_id):
            skill = await self._read(skill_id)
            if skill is None:
                return None
            skill.usage_count += 1
            skill.updated_at = max(utc_now(), skill.created_at)
            await self._write(skill)
            return skill.usage_count

    async def update(
        self, skill_id: str, changes: Union[BaseModel, Mapping[str, Any]]
    ) -> Skill:
        """
        Merge changes into an existing skill.

        ``id``, ``created_at``, ``usage_count`` and ``is_builtin`` are never
        changed through this method.

        Raises:
            SkillNotFoundError: If the skill does not exist
            SkillValidationError: If the merged record is invalid
        """
        await self.init()
        updates = {
            key: value
            for key, value in _normalize(changes).items()
            if key not in PROTECTED_FIELDS and key != "updated_at" and value is not None
        }

        async with self._lock(skill_id):
            existing = await self.get(skill_id)
            if existing is None:
                raise SkillNotFoundError(f"Skill not found: {skill_id}")

            data = existing.model_dump()
            data.update(updates)
            missing = _missing_fields(data)
            if missing:
                raise SkillValidationError(
                    f"Missing required skill fields: {', '.join(missing)}"
                )
            record = self._validate(data)
            record.updated_at = max(utc_now(), record.created_at)
            await self._write(record)

        logger.info(f"Skill updated: {record.name} ({record.id})")
        return record

    async def search(self, query: str) -> List[Skill]:
        """Case-insensitive substring search over name, description and tags."""
        needle = query.lower()
        return [
            skill
            for skill in await self.list()
            if needle in skill.name.lower()
            or needle in skill.description.lower()
            or any(needle in tag.lower() for tag in skill.tags)
        ]

    def validate_code(self, code: str) -> ValidationResult:
        """Check script text against the deny-list."""
        return validate_code(code)
