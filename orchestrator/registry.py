"""Validated, read-only registry of storage targets and job profiles."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Union

from pydantic import ValidationError

from common.errors import ConfigValidationError, UnknownReferenceError
from common.models.profile import JobProfile
from common.models.target import StorageTarget

if TYPE_CHECKING:
    from orchestrator.config import Settings

logger = logging.getLogger(__name__)

RawProfiles = Union[Mapping[str, Mapping[str, Any]], Iterable[Mapping[str, Any]]]


def _format_errors(prefix: str, error: ValidationError) -> list[str]:
    messages = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"])
        where = f"{prefix}.{loc}" if loc else prefix
        messages.append(f"{where}: {err['msg']}")
    return messages


class Registry:
    """Targets and profiles by name. Built only through validate()."""

    def __init__(self, targets: dict[str, StorageTarget], profiles: dict[str, JobProfile]):
        self._targets = MappingProxyType(dict(targets))
        self._profiles = MappingProxyType(dict(profiles))

    @classmethod
    def validate(
        cls,
        raw_targets: Iterable[Mapping[str, Any]],
        raw_profiles: RawProfiles,
    ) -> "Registry":
        """Validate raw definitions; raise ConfigValidationError listing every problem."""
        errors: list[str] = []
        targets: dict[str, StorageTarget] = {}
        profiles: dict[str, JobProfile] = {}

        for index, raw in enumerate(raw_targets or []):
            if not isinstance(raw, Mapping):
                errors.append(f"targets[{index}]: expected a mapping, got {type(raw).__name__}")
                continue
            label = f"target '{raw['name']}'" if raw.get("name") else f"targets[{index}]"
            try:
                target = StorageTarget.model_validate(dict(raw))
            except ValidationError as e:
                errors.extend(_format_errors(label, e))
                continue
            if target.name in targets:
                errors.append(f"Duplicate target name: {target.name}")
                continue
            targets[target.name] = target

        if isinstance(raw_profiles, Mapping):
            entries = [(name, fields, {"name": name}) for name, fields in raw_profiles.items()]
        else:
            entries = [
                (raw.get("name", f"profiles[{i}]") if isinstance(raw, Mapping) else f"profiles[{i}]", raw, {})
                for i, raw in enumerate(raw_profiles or [])
            ]

        for name, fields, overrides in entries:
            if fields is None:
                fields = {}
            if not isinstance(fields, Mapping):
                errors.append(f"profile '{name}': expected a mapping, got {type(fields).__name__}")
                continue
            raw = {**dict(fields), **overrides}
            try:
                profile = JobProfile.model_validate(raw)
            except ValidationError as e:
                errors.extend(_format_errors(f"profile '{name}'", e))
                continue
            if profile.name in profiles:
                errors.append(f"Duplicate profile name: {profile.name}")
                continue
            profiles[profile.name] = profile

        if errors:
            for message in errors:
                logger.error(f"Configuration error: {message}")
            raise ConfigValidationError(errors)

        logger.info(f"Loaded {len(targets)} targets and {len(profiles)} profiles")
        return cls(targets, profiles)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Registry":
        return cls.validate(settings.storage.targets, settings.storage.fio.all_profiles())

    def target(self, name: str) -> StorageTarget:
        try:
            return self._targets[name]
        except KeyError:
            raise UnknownReferenceError("target", name) from None

    def profile(self, name: str) -> JobProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise UnknownReferenceError("profile", name) from None

    @property
    def targets(self) -> Mapping[str, StorageTarget]:
        return self._targets

    @property
    def profiles(self) -> Mapping[str, JobProfile]:
        return self._profiles
