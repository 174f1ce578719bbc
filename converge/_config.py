# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import fnmatch
import logging
from configparser import ConfigParser
from pathlib import Path
from typing import Mapping
from typing import NamedTuple
from typing import Optional

_logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = (
    Path(__file__).with_name('config.ini'),
    Path('~/.config/converge.ini').expanduser(),
    )


def read_config(target_host: str, *paths: Path) -> Mapping[str, str]:
    """Read sections matching the target host and resolve overrides.

    Section names are host masks, like "[web-??.example.com]".
    Optionally add ";v123" to a section name. If not specified, "v0" is
    assumed. Higher versions override lower versions; with equal versions,
    later files and later sections win.
    """
    config_parts = []
    for path_i, path in enumerate(paths):
        config_parser = ConfigParser(interpolation=None)
        config_parser.read(path)
        for section_i, section in enumerate(config_parser.sections()):
            mask, version = _parse_section_header(section)
            if fnmatch.fnmatch(target_host, mask):
                _logger.debug("Config %s: section %s: read", path, section)
                config_parts.append((version, path_i, section_i, config_parser.items(section)))
            else:
                _logger.debug("Config %s: section %s: skip", path, section)
    config_parts.sort(key=lambda part: part[:3])
    config = {}
    for _version, _path_i, _section_i, items in config_parts:
        config.update(items)
    return config


def _parse_section_header(section):
    """Split mask and version.

    >>> _parse_section_header('defaults')
    ('*', 0)
    >>> _parse_section_header('db-*;v3')
    ('db-*', 3)
    """
    if section == 'defaults':
        return '*', 0
    mask, _semicolon, extra = section.partition(';')
    if not extra:
        return mask, 0
    if extra.startswith('v'):
        try:
            return mask, int(extra[1:])
        except ValueError:
            raise ValueError(f"Cannot parse {extra} in {section}")
    raise ValueError(f"Unknown {extra} in {section}")


def _boolean(value: str) -> bool:
    if value.lower() in ('1', 'yes', 'true', 'on'):
        return True
    if value.lower() in ('0', 'no', 'false', 'off', ''):
        return False
    raise ValueError(f"Not a boolean: {value!r}")


class RunSettings(NamedTuple):

    concurrency: int = 4
    ssh_port: int = 22
    ssh_user: str = 'root'
    auth_reference: str = 'agent'
    sudo: bool = False
    command_timeout_sec: float = 60
    install_timeout_sec: float = 600
    secret_storage_url: Optional[str] = None
    private_key_path: Path = Path('~/.ssh/id_rsa')
    log_file: Optional[Path] = None

    @classmethod
    def from_config(cls, config: Mapping[str, str]) -> 'RunSettings':
        default = cls()
        log_file = config.get('log_file')
        settings = cls(
            concurrency=int(config.get('concurrency', default.concurrency)),
            ssh_port=int(config.get('ssh_port', default.ssh_port)),
            ssh_user=config.get('ssh_user', default.ssh_user),
            auth_reference=config.get('auth_reference', default.auth_reference),
            sudo=_boolean(config.get('sudo', 'no')),
            command_timeout_sec=float(config.get('command_timeout_sec', default.command_timeout_sec)),
            install_timeout_sec=float(config.get('install_timeout_sec', default.install_timeout_sec)),
            secret_storage_url=config.get('secret_storage_url') or None,
            private_key_path=Path(config.get('private_key_path', default.private_key_path)).expanduser(),
            log_file=Path(log_file).expanduser() if log_file else None,
            )
        if settings.concurrency < 1:
            raise ValueError(f"Concurrency must be positive, got {settings.concurrency}")
        return settings


def load_settings(target_host: str, *paths: Path) -> RunSettings:
    return RunSettings.from_config(read_config(target_host, *(paths or DEFAULT_CONFIG_PATHS)))
