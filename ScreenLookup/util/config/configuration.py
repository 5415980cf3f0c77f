import json
import os
import shlex
import shutil
from dataclasses import dataclass, field
from dataclasses_json import dataclass_json
from sys import platform
from typing import List, Optional

from ScreenLookup.util.logging_config import logger

DEFAULT_LANGUAGES = ["ja", "en"]
WORKER_COMMAND_ENV = "SCREENLOOKUP_WORKER"


def is_windows():
    return platform == 'win32'


def is_mac():
    return platform == 'darwin'


@dataclass_json
@dataclass
class Worker:
    cli_path: Optional[str] = None
    ready_timeout: float = 5.0
    pick_timeout: float = 60.0
    scan_timeout: float = 30.0
    stop_timeout: float = 2.0


@dataclass_json
@dataclass
class Ocr:
    languages: List[str] = field(default_factory=lambda: list(DEFAULT_LANGUAGES))
    save_captures_to: Optional[str] = None

    def __post_init__(self):
        if not self.languages:
            self.languages = list(DEFAULT_LANGUAGES)


@dataclass_json
@dataclass
class Overlay:
    min_font_size: float = 8.0
    rotation_threshold: float = 0.5
    min_box_width: float = 10.0
    min_box_height: float = 8.0
    box_padding: float = 1.0
    error_display_ms: int = 5000


@dataclass_json
@dataclass
class Config:
    worker: Worker = field(default_factory=Worker)
    ocr: Ocr = field(default_factory=Ocr)
    overlay: Overlay = field(default_factory=Overlay)

    @classmethod
    def new(cls):
        return cls()

    @classmethod
    def load(cls):
        config_path = get_config_path()
        if not os.path.exists(config_path):
            return cls.new()
        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                return cls.from_dict(json.load(file))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error parsing {config_path}, saving backup and using defaults: {e}")
            shutil.copy(config_path, config_path + '.bak')
            return cls.new()

    def save(self):
        with open(get_config_path(), 'w', encoding='utf-8') as file:
            json.dump(self.to_dict(), file, indent=4)
        return self

    def worker_command(self) -> Optional[List[str]]:
        """The configured worker command, or None to run the bundled Python worker."""
        override = os.environ.get(WORKER_COMMAND_ENV)
        if override:
            return shlex.split(override)
        if self.worker.cli_path:
            return [self.worker.cli_path]
        return None


def get_app_directory():
    if is_windows():
        appdata_dir = os.getenv('APPDATA')
    else:  # macOS and Linux
        appdata_dir = os.path.expanduser('~/.config')
    config_dir = os.path.join(appdata_dir, 'ScreenLookup')
    os.makedirs(config_dir, exist_ok=True)
    return config_dir


def get_config_path():
    return os.path.join(get_app_directory(), 'config.json')


config_instance: Optional[Config] = None


def get_config() -> Config:
    global config_instance
    if config_instance is None:
        config_instance = Config.load()
        logger.debug(f"Loaded config from {get_config_path()}")
    return config_instance


def reload_config() -> Config:
    global config_instance
    config_instance = None
    return get_config()


def get_overlay_config() -> Overlay:
    return get_config().overlay
