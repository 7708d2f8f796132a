import os
import yaml
import keyring
from typing import Optional

from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"

# Stored in the YAML file in place of a secret that lives in the keyring.
KEYRING_MARKER = True


class YamlConfig:
    """Settings file whose cloud credentials can be kept in the OS keyring.

    With ``ENCRYPT_SETTINGS=1`` the values of ``SENSITIVE_KEYS`` are written to
    the keyring and the file only records that a secret exists. A marked key
    is read back from the keyring whatever the current setting, so toggling
    encryption does not lose credentials.
    """

    SENSITIVE_KEYS = {"cloud_token"}
    SERVICE = "workout_buddy"

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"

    def _read_file(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def load(self) -> dict:
        data = self._read_file()
        for key in self.SENSITIVE_KEYS:
            if data.get(key) is not KEYRING_MARKER:
                continue
            secret = keyring.get_password(self.SERVICE, key)
            if secret is None:
                data.pop(key)
            else:
                data[key] = secret
        return data

    def save(self, data: dict) -> None:
        out = dict(data)
        for key in self.SENSITIVE_KEYS:
            if out.get(key) is None:
                continue
            if self.encrypt:
                keyring.set_password(self.SERVICE, key, str(out[key]))
                out[key] = KEYRING_MARKER
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)

    def update(self, changes: dict) -> SettingsSchema:
        """Merge the non-``None`` ``changes`` into the file and return the result.

        The merged settings are validated first; nothing is written if they
        are invalid.
        """
        data = self.load()
        data.update({k: v for k, v in changes.items() if v is not None})
        settings = validate_settings(data)
        self.save(data)
        return settings

    def forget_secrets(self) -> None:
        """Remove stored credentials from the file and the keyring."""
        data = self._read_file()
        for key in self.SENSITIVE_KEYS:
            if data.pop(key, None) is KEYRING_MARKER:
                keyring.delete_password(self.SERVICE, key)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f)


def load_settings(path: str = "settings.yaml") -> SettingsSchema:
    """Read ``path`` and validate it, filling in defaults for missing keys."""
    return validate_settings(YamlConfig(path).load())


def configure_cloud(
    path: str,
    url: Optional[str] = None,
    user_id: Optional[str] = None,
    token: Optional[str] = None,
) -> SettingsSchema:
    return YamlConfig(path).update(
        {"cloud_database_url": url, "cloud_user_id": user_id, "cloud_token": token}
    )
