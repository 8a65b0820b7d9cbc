"""roomrelay -- Configuration."""

from roomrelay.config.settings import RelaySettings, get_settings

__all__: list[str] = ["RelaySettings", "get_settings"]
