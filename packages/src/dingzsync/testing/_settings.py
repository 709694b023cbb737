"""Test factory for :class:`~dingzsync._settings.Settings`.

:func:`make_settings` builds settings from explicit keyword arguments
only, ignoring ``os.environ``, ``.env`` files and secret directories.
"""

from __future__ import annotations

from typing import Any

from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from dingzsync._settings import Settings


class _IsolatedSettings(Settings):
    """Settings whose only source is the constructor arguments."""

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],  # noqa: ARG003
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings,)


def make_settings(**overrides: Any) -> Settings:
    """Create a ``Settings`` instance with test defaults.

    Example::

        settings = make_settings(global_token="secret")
        assert settings.polling.motion_poller is True
    """
    return _IsolatedSettings(_env_file=None, **overrides)  # type: ignore[call-arg]
