"""User-defined profiles, API definitions, and attachable code files."""

from __future__ import annotations

import json
import logging
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vibecheck_orchestrator.catalog.modes import BuiltinMode, get_mode
from vibecheck_orchestrator.errors import ConfigurationError
from vibecheck_orchestrator.storage.base import KeyValueStore

logger = logging.getLogger(__name__)

PROFILES_KEY = "personas"
APIS_KEY = "apis"
CODE_FILES_KEY = "code_files"


class UserProfile(BaseModel):
    """A saved generation profile; its model and sampling override sidebar defaults."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["profile"] = "profile"
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1)
    icon: str = "person"
    syntax: str = "text"
    is_renderable: bool = False
    image_output: bool = False
    system_instruction: str = ""
    model: str = "gemini-2.5-flash"
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    top_k: int | None = Field(default=None, ge=1)
    api_id: str | None = None
    code_file_ids: list[str] = Field(default_factory=list)
    response_modifier: str | None = "text_only"


class ApiDefinition(BaseModel):
    """A tool list or response schema, stored as JSON text."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1)
    type: Literal["tools", "schema"]
    definition: str

    def parsed(self) -> Any:
        try:
            return json.loads(self.definition)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in API definition {self.name!r}: {exc}") from exc


class CodeFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1)
    language: str = "text"
    content: str = ""


class ProfileBook:
    """Manage profiles, API definitions, and code files; persist every mutation."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._profiles = _load_models(store, PROFILES_KEY, UserProfile)
        self._apis = _load_models(store, APIS_KEY, ApiDefinition)
        self._code_files = _load_models(store, CODE_FILES_KEY, CodeFile)

    # Profiles

    def list_profiles(self) -> list[UserProfile]:
        return list(self._profiles)

    def get_profile(self, profile_id: str) -> UserProfile | None:
        return next((item for item in self._profiles if item.id == profile_id), None)

    def add_profile(self, data: dict[str, Any]) -> UserProfile:
        payload = {key: value for key, value in data.items() if key != "id"}
        profile = _validate(UserProfile, payload)
        self._profiles.append(profile)
        self._save_profiles()
        return profile

    def update_profile(self, profile: UserProfile) -> UserProfile:
        index = _index_of(self._profiles, profile.id)
        if index is None:
            raise KeyError(f"Profile {profile.id} does not exist")
        self._profiles[index] = profile
        self._save_profiles()
        return profile

    def delete_profile(self, profile_id: str) -> None:
        self._profiles = [item for item in self._profiles if item.id != profile_id]
        self._save_profiles()

    def export_profile(self, profile_id: str) -> str:
        profile = self.get_profile(profile_id)
        if profile is None:
            raise KeyError(f"Profile {profile_id} does not exist")
        return profile.model_dump_json(indent=2, exclude={"id", "kind"})

    def import_profiles(self, data: str | dict[str, Any] | list[Any]) -> list[UserProfile]:
        """Import one or many exported profiles; every import gets a fresh id."""
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"Profile import is not valid JSON: {exc}") from exc
        rows = data if isinstance(data, list) else [data]
        imported: list[UserProfile] = []
        for row in rows:
            if not isinstance(row, dict):
                raise ConfigurationError("Each imported profile must be a JSON object")
            payload = {key: value for key, value in row.items() if key not in {"id", "kind"}}
            imported.append(_validate(UserProfile, payload))
        self._profiles.extend(imported)
        self._save_profiles()
        return imported

    # API definitions

    def list_apis(self) -> list[ApiDefinition]:
        return list(self._apis)

    def get_api(self, api_id: str) -> ApiDefinition | None:
        return next((item for item in self._apis if item.id == api_id), None)

    def add_api(self, data: dict[str, Any]) -> ApiDefinition:
        api = _validate(ApiDefinition, {k: v for k, v in data.items() if k != "id"})
        self._apis.append(api)
        self.store.save(APIS_KEY, _dump_all(self._apis))
        return api

    def update_api(self, api: ApiDefinition) -> ApiDefinition:
        index = _index_of(self._apis, api.id)
        if index is None:
            raise KeyError(f"API definition {api.id} does not exist")
        self._apis[index] = api
        self.store.save(APIS_KEY, _dump_all(self._apis))
        return api

    def delete_api(self, api_id: str) -> None:
        self._apis = [item for item in self._apis if item.id != api_id]
        self.store.save(APIS_KEY, _dump_all(self._apis))
        changed = False
        for index, profile in enumerate(self._profiles):
            if profile.api_id == api_id:
                self._profiles[index] = profile.model_copy(update={"api_id": None})
                changed = True
        if changed:
            self._save_profiles()

    # Code files

    def list_code_files(self) -> list[CodeFile]:
        return list(self._code_files)

    def get_code_file(self, file_id: str) -> CodeFile | None:
        return next((item for item in self._code_files if item.id == file_id), None)

    def add_code_file(self, data: dict[str, Any]) -> CodeFile:
        code_file = _validate(CodeFile, {k: v for k, v in data.items() if k != "id"})
        self._code_files.append(code_file)
        self.store.save(CODE_FILES_KEY, _dump_all(self._code_files))
        return code_file

    def update_code_file(self, code_file: CodeFile) -> CodeFile:
        index = _index_of(self._code_files, code_file.id)
        if index is None:
            raise KeyError(f"Code file {code_file.id} does not exist")
        self._code_files[index] = code_file
        self.store.save(CODE_FILES_KEY, _dump_all(self._code_files))
        return code_file

    def delete_code_file(self, file_id: str) -> None:
        self._code_files = [item for item in self._code_files if item.id != file_id]
        self.store.save(CODE_FILES_KEY, _dump_all(self._code_files))
        changed = False
        for index, profile in enumerate(self._profiles):
            if file_id in profile.code_file_ids:
                remaining = [item for item in profile.code_file_ids if item != file_id]
                self._profiles[index] = profile.model_copy(update={"code_file_ids": remaining})
                changed = True
        if changed:
            self._save_profiles()

    def _save_profiles(self) -> None:
        self.store.save(PROFILES_KEY, _dump_all(self._profiles))


class Catalog:
    """Lookup across built-in modes and user profiles; built-ins win on id clashes."""

    def __init__(self, profiles: ProfileBook) -> None:
        self.profiles = profiles

    def lookup(self, config_id: str) -> BuiltinMode | UserProfile | None:
        return get_mode(config_id) or self.profiles.get_profile(config_id)


def _load_models(store: KeyValueStore, key: str, model: type[BaseModel]) -> list[Any]:
    rows = store.load(key, [])
    if not isinstance(rows, list):
        logger.error("profile_book event=load_skipped key=%s reason=not_a_list", key)
        return []
    loaded: list[Any] = []
    for row in rows:
        try:
            loaded.append(model.model_validate(row))
        except ValidationError as exc:
            logger.error("profile_book event=row_skipped key=%s reason=%s", key, exc)
    return loaded


def _validate(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid {model.__name__}: {exc}") from exc


def _dump_all(items: list[BaseModel]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def _index_of(items: list[Any], item_id: str) -> int | None:
    for index, item in enumerate(items):
        if item.id == item_id:
            return index
    return None
