"""
State manager for pydfgram.

Handles saving and loading the session settings in a hierarchical JSON
format.  The state file is human-readable and can be edited manually.
"""

import json
import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)


def get_default_state_file() -> Path:
    """
    Get the default state file path.

    Returns the path to ~/.pydfgram/state.json
    """
    state_dir = Path.home() / '.pydfgram'
    state_dir.mkdir(exist_ok=True)
    return state_dir / 'state.json'


class StateManager:
    """
    Manages persisted settings for pydfgram.

    The state is stored in a hierarchical JSON structure:
    {
        "version": "1.0",
        "loader": { ... },    # last data folder of the host
        "session": { ... }    # Session.to_dict() layout
    }
    """

    DEFAULT_STATE = {
        "version": "1.0",
        "loader": {
            "last_folder": "",
        },
        "session": {
            # schema_version is bumped whenever a default value changes so that
            # old saved states can be migrated on load.
            "schema_version": 2,
            "params": {
                "geometry": {
                    "detector_distance": 1035.0,
                    "pix_size": 1.0,
                    "mid_pix_offset": [0, 0],
                },
                "image_cut": {"left": 0, "top": 0, "right": 0, "bottom": 0},
                "image_transform": {"rotation": 0, "mirror": False},
                "norm_mode": "none",
                "intensity_scaled_avg": True,   # new in schema_version 2
                "intensity_scale": 1.0,
                "num_bins": None,
                "num_slices": 1,
            },
            "binning": 1,
            "baseline": {"ranges": [], "polynom_degree": 2},
            "peaks": [],
            "correction_enabled": True,
            "selection": [],
        },
    }

    def __init__(self, state_file: Optional[Path] = None):
        """
        Initialize the state manager.

        Args:
            state_file: Path to state file. If None, uses default location.
        """
        self.state_file = Path(state_file) if state_file else get_default_state_file()
        self.state = deepcopy(self.DEFAULT_STATE)
        self.load()

    def load(self) -> bool:
        """
        Load state from file.

        Returns:
            True if state was loaded, False if using defaults
        """
        if not self.state_file.exists():
            log.info("State file not found: %s; using default state", self.state_file)
            return False

        try:
            with open(self.state_file, 'r') as f:
                loaded_state = json.load(f)
        except (OSError, ValueError) as e:
            log.warning("Error loading state file %s: %s; using default state",
                        self.state_file, e)
            return False

        # Read before merging: the merge fills a missing schema_version from
        # DEFAULT_STATE.
        loaded_version = loaded_state.get('session', {}).get('schema_version', 1)
        self.state = self._merge_state(self.DEFAULT_STATE, loaded_state)
        self._migrate_state(loaded_version)
        log.info("Loaded state from: %s", self.state_file)
        return True

    def save(self) -> bool:
        """
        Save current state to file.

        Returns:
            True if successful, False otherwise
        """
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, 'w') as f:
                json.dump(self.state, f, indent=2)
        except (OSError, TypeError) as e:
            log.error("Error saving state file %s: %s", self.state_file, e)
            return False
        log.info("Saved state to: %s", self.state_file)
        return True

    def get(self, section: str, key: Optional[str] = None, default: Any = None) -> Any:
        """
        Get a section or one key of it.

        Args:
            section: Section name (e.g., "session")
            key: Optional key within the section
            default: Default value if not found
        """
        section_state = self.state.get(section, {})
        if key is None:
            return section_state
        return section_state.get(key, default)

    def set(self, section: str, key: str, value: Any):
        self.state.setdefault(section, {})[key] = value

    def update(self, section: str, state_dict: Dict[str, Any]):
        """Update multiple values of a section."""
        self.state.setdefault(section, {}).update(state_dict)

    def store_session(self, session) -> None:
        """Copy the settings of *session* into the ``session`` section."""
        self.update('session', session.to_dict())

    def apply_to_session(self, session) -> None:
        """Apply the ``session`` section to *session*."""
        session.settings_from_dict(self.get('session'))

    def reset(self, section: Optional[str] = None):
        """
        Reset state to defaults.

        Args:
            section: Section to reset. If None, resets everything.
        """
        if section is None:
            self.state = deepcopy(self.DEFAULT_STATE)
        elif section in self.DEFAULT_STATE:
            self.state[section] = deepcopy(self.DEFAULT_STATE[section])

    def export_section(self, section: str, export_path: Path) -> bool:
        """
        Export one section to a separate file, e.g. to share settings as a preset.

        Returns:
            True if successful, False otherwise
        """
        try:
            with open(export_path, 'w') as f:
                json.dump(self.state.get(section, {}), f, indent=2)
        except (OSError, TypeError) as e:
            log.error("Error exporting %s state: %s", section, e)
            return False
        log.info("Exported %s state to: %s", section, export_path)
        return True

    def import_section(self, section: str, import_path: Path) -> bool:
        """
        Import one section from a separate file.

        Returns:
            True if successful, False otherwise
        """
        try:
            with open(import_path, 'r') as f:
                section_state = json.load(f)
        except (OSError, ValueError) as e:
            log.error("Error importing %s state: %s", section, e)
            return False
        self.state[section] = section_state
        log.info("Imported %s state from: %s", section, import_path)
        return True

    def _migrate_state(self, loaded_version: Optional[int] = None):
        """
        Upgrade saved state to the current schema.

        When a default changes, ``schema_version`` in DEFAULT_STATE is bumped
        and the affected fields are reset here, so old on-disk values do not
        silently persist.

        Args:
            loaded_version: The session schema_version read from the file
                before merging with DEFAULT_STATE.
        """
        session = self.state.get('session', {})
        stored = loaded_version if loaded_version is not None \
            else session.get('schema_version', 1)
        target = self.DEFAULT_STATE['session']['schema_version']

        if stored < 2 <= target:
            # schema_version 1 -> 2: averaged intensities became the default
            params = session.setdefault('params', {})
            default_params = self.DEFAULT_STATE['session']['params']
            params['intensity_scaled_avg'] = default_params['intensity_scaled_avg']
            params['intensity_scale'] = default_params['intensity_scale']
            session['schema_version'] = 2
            log.info("Migrated session state from schema_version %d to 2", stored)

    def _merge_state(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded state over the defaults.

        Keys present in *loaded* win; keys only in *default* are added, so
        settings introduced after the file was written get their defaults.
        """
        result = deepcopy(default)
        for key, value in loaded.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_state(result[key], value)
            else:
                result[key] = value
        return result
