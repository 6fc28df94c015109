"""
Target configuration.

A target is resolved from up to four layers, later layers winning:

    <root>/.config                      global defaults
    <root>/targets.config  (preamble)   keys before the first [section]
    <root>/targets.config  [<target>]   the target's section
    <root>/targets/<target>/.config     the target directory's own config

All files use shell-style ``KEY=value`` lines. The target directory also
holds the ``.env`` file injected into the container and any files named in
``FILE_MAPPINGS``; it is uploaded verbatim to ``/var/app/<container-name>/``.
"""

import configparser
import logging
from pathlib import Path

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator

from shipyard.config import settings
from shipyard.errors import ConfigError
from shipyard.images import registry_host

logger = logging.getLogger(__name__)

GLOBAL_CONFIG = ".config"
TARGETS_CONFIG = "targets.config"
TARGETS_DIR = "targets"
COMMON_SECTION = "__common__"


class FileMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    local: str
    container_path: str


class Target(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    ssh_host: str = Field(alias="SSH_HOST")
    container_name: str = Field(alias="CONTAINER_NAME")
    image: str = Field(alias="CONTAINER_IMAGE")
    registry: str | None = Field(default=None, alias="REGISTRY")
    registry_username: str | None = Field(default=None, alias="GHCR_USERNAME")
    registry_token: SecretStr | None = Field(default=None, alias="GHCR_TOKEN")
    app_port: int = Field(default=3000, alias="APP_PORT", ge=1, le=65535)
    alt_port: int = Field(default=3001, alias="ALT_PORT", ge=1, le=65535)
    health_check_path: str = Field(default="/", alias="HEALTH_CHECK_PATH")
    health_check_timeout: int = Field(default=30, alias="HEALTH_CHECK_TIMEOUT", ge=1)
    domain: str | None = Field(default=None, alias="DOMAIN")
    file_mappings: list[FileMapping] = Field(default_factory=list, alias="FILE_MAPPINGS")
    port_mappings: list[str] = Field(default_factory=list, alias="PORT_MAPPINGS")

    local_dir: Path = Path(".")
    remote_root: str = "/var/app"
    default_registry: str = "ghcr.io"

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data):
        if not isinstance(data, dict):
            return data
        # Empty values mean "unset", as they do in the shell configs
        data = {k: v for k, v in data.items() if not (isinstance(v, str) and not v.strip())}
        if not data.get("CONTAINER_NAME") and not data.get("container_name"):
            data["container_name"] = data.get("name")
        return data

    @field_validator("file_mappings", mode="before")
    @classmethod
    def _parse_file_mappings(cls, value):
        if not isinstance(value, str):
            return value
        mappings = []
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            local, sep, container_path = item.partition(":")
            if not sep or not local.strip() or not container_path.strip():
                raise ValueError(f"file mapping '{item}' must look like local-file:container-path")
            mappings.append({"local": local.strip(), "container_path": container_path.strip()})
        return mappings

    @field_validator("port_mappings", mode="before")
    @classmethod
    def _parse_port_mappings(cls, value):
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        return value

    @field_validator("health_check_path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        value = value.strip()
        return value if value.startswith("/") else "/" + value

    @model_validator(mode="after")
    def _distinct_ports(self):
        if self.app_port == self.alt_port:
            raise ValueError(f"APP_PORT and ALT_PORT must differ (both are {self.app_port})")
        return self

    # ── Derived names and paths ──

    @property
    def candidate_name(self) -> str:
        return f"{self.container_name}-blue"

    @property
    def proxy_name(self) -> str:
        return f"caddy-{self.name}"

    @property
    def remote_dir(self) -> str:
        return f"{self.remote_root}/{self.container_name}"

    @property
    def remote_env_file(self) -> str:
        return f"{self.remote_dir}/.env"

    @property
    def proxy_dir(self) -> str:
        return f"{self.remote_root}/{self.proxy_name}"

    @property
    def caddyfile_path(self) -> str:
        return f"{self.proxy_dir}/Caddyfile"

    @property
    def env_file(self) -> Path:
        return self.local_dir / ".env"

    @property
    def credentials(self) -> tuple[str, str] | None:
        """(username, token) when both are configured, else None (public image)."""
        if self.registry_username and self.registry_token:
            return self.registry_username, self.registry_token.get_secret_value()
        return None

    @property
    def login_registry(self) -> str:
        return self.registry or registry_host(self.image) or self.default_registry

    def remote_mounts(self) -> list[tuple[str, str]]:
        """(remote-file, container-path) pairs for every file mapping."""
        return [(f"{self.remote_dir}/{m.local}", m.container_path) for m in self.file_mappings]


def read_config_file(path: Path) -> dict[str, str]:
    """Parse a shell-style KEY=value file; quotes are stripped, comments ignored."""
    values = dotenv_values(path)
    return {k: v for k, v in values.items() if v is not None}


def read_sectioned_config(path: Path) -> tuple[dict[str, str], dict[str, dict[str, str]]]:
    """Parse ``targets.config``: (preamble keys, {section: keys})."""
    parser = configparser.ConfigParser(interpolation=None, strict=False, default_section="__none__")
    parser.optionxform = str
    text = path.read_text()
    try:
        parser.read_string(f"[{COMMON_SECTION}]\n{text}", source=str(path))
    except configparser.Error as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    def clean(section):
        return {k: v.strip().strip('"').strip("'") for k, v in parser.items(section)}

    common = clean(COMMON_SECTION)
    sections = {s: clean(s) for s in parser.sections() if s != COMMON_SECTION}
    return common, sections


class TargetLoader:
    def __init__(
        self,
        root_dir: str | Path | None = None,
        remote_root: str | None = None,
        default_registry: str | None = None,
    ):
        self.root_dir = Path(root_dir or settings.ROOT_DIR).resolve()
        self.targets_dir = self.root_dir / TARGETS_DIR
        self.remote_root = remote_root or settings.REMOTE_APP_ROOT
        self.default_registry = default_registry or settings.DEFAULT_REGISTRY

    def _sections(self) -> tuple[dict[str, str], dict[str, dict[str, str]]]:
        path = self.root_dir / TARGETS_CONFIG
        if not path.is_file():
            return {}, {}
        return read_sectioned_config(path)

    def available_targets(self) -> list[str]:
        names = set()
        if self.targets_dir.is_dir():
            names.update(p.name for p in self.targets_dir.iterdir() if p.is_dir())
        names.update(self._sections()[1])
        return sorted(names)

    def directory_targets(self) -> list[str]:
        """Targets that have their own directory under ``targets/``."""
        if not self.targets_dir.is_dir():
            return []
        return sorted(p.name for p in self.targets_dir.iterdir() if p.is_dir())

    def resolve_values(self, name: str) -> dict[str, str]:
        values: dict[str, str] = {}
        global_config = self.root_dir / GLOBAL_CONFIG
        if global_config.is_file():
            values.update(read_config_file(global_config))

        common, sections = self._sections()
        values.update(common)
        in_sections = name in sections
        values.update(sections.get(name, {}))

        target_config = self.targets_dir / name / GLOBAL_CONFIG
        if target_config.is_file():
            values.update(read_config_file(target_config))
        elif not in_sections:
            raise ConfigError(f"Target config not found: {target_config}")
        return values

    def load(self, name: str) -> Target:
        if not self.targets_dir.is_dir():
            raise ConfigError(f"targets/ directory not found in {self.root_dir}")

        values = self.resolve_values(name)
        container_name = values.get("CONTAINER_NAME") or name

        local_dir = self.targets_dir / name
        if not local_dir.is_dir():
            local_dir = self.targets_dir / container_name
        if not local_dir.is_dir():
            raise ConfigError(f"Target directory not found: {self.targets_dir / name}")

        for key in ("SSH_HOST", "CONTAINER_IMAGE"):
            if not values.get(key, "").strip():
                raise ConfigError(f"{key} not set for target '{name}'")

        if not (local_dir / ".env").is_file():
            raise ConfigError(f".env file not found in {local_dir}/")

        try:
            target = Target(
                name=name,
                local_dir=local_dir,
                remote_root=self.remote_root,
                default_registry=self.default_registry,
                **values,
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration for target '{name}': {e}") from e

        for mapping in target.file_mappings:
            if not (local_dir / mapping.local).exists():
                logger.warning(f"  Mapped file {mapping.local} not found in {local_dir}")

        return target
