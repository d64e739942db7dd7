"""Configuration file loader and validator.

Handles reading, formatting, and validating settings from the INI configuration file.
Fixed sections (GENERAL, SERVER, STORAGE, EVENTSUB) map onto the dataclasses in
``models.config_models``; every ``[BOT.<name>]`` section becomes one bot identity.
Raises exceptions for any issues encountered during loading.
"""

from __future__ import annotations

import ast
import configparser
import re
from configparser import ConfigParser
from dataclasses import fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from models.config_models import Config, IdentityConfig
from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Callable
    from dataclasses import Field as DataclassField

__all__: list[str] = [
    "Config",
    "ConfigFileNotFoundError",
    "ConfigFormatError",
    "ConfigLoader",
    "ConfigLoaderError",
    "ConfigTypeError",
    "ConfigValueError",
]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

BOT_SECTION_PREFIX: Final[str] = "BOT."
FIXED_SECTIONS: Final[tuple[str, ...]] = ("GENERAL", "SERVER", "STORAGE", "EVENTSUB")
ALLOWED_TRANSPORTS: Final[tuple[str, ...]] = ("webhook", "websocket")


class ConfigLoaderError(Exception):
    """An error occurred while processing the configuration file."""


class ConfigFileNotFoundError(ConfigLoaderError):
    """The specified configuration file does not exist."""


class ConfigFormatError(ConfigLoaderError):
    """The configuration file is not formatted correctly."""


class ConfigValueError(ConfigFormatError):
    """The configuration file contains an invalid value."""


class ConfigTypeError(ConfigFormatError):
    """The configuration file contains an invalid type."""


class ConfigLoader:
    """Handles loading and validation of configuration settings.

    Args:
        config_filename (str): INI file name to load.
        script_name (str): Executing script name, used in error messaging.
        debug (bool): Force ``GENERAL.DEBUG`` on.
        port (int | None): Override of ``SERVER.PORT``.

    Raises:
        ConfigFileNotFoundError: If the configuration file does not exist.
        ConfigFormatError: If the file cannot be parsed or contains invalid values/types.
    """

    def __init__(
        self,
        *,
        config_filename: str,
        script_name: str,
        **args,
    ) -> None:
        config_path = Path(config_filename)
        msg: str
        if not config_path.exists():
            msg = (
                f"Configuration file '{config_filename}' not found. "
                f"Please create '{config_filename}' in the same directory as '{script_name}'."
            )
            raise ConfigFileNotFoundError(msg)

        # keys are case sensitive so that they line up with the dataclass field names
        parser: ConfigParser = ConfigParser()
        parser.optionxform = str  # type: ignore[assignment, method-assign]

        try:
            parser.read(config_filename, encoding="utf-8")
        except configparser.Error as err:
            msg = f"Failed to parse configuration file '{config_filename}': {err}"
            raise ConfigFormatError(msg) from None

        self.config = Config()
        self.config.GENERAL.SCRIPT_NAME = script_name
        self._convert_settings(parser)
        self.config.BOTS = self._convert_bot_sections(parser)

        if args.get("debug", False):
            self.config.GENERAL.DEBUG = True
        if args.get("port") is not None:
            self.config.SERVER.PORT = int(args["port"])
        self._validate_settings()

    def _convert_settings(self, parser: ConfigParser) -> None:
        """Convert the fixed sections from the parser to the Config object.

        Args:
            parser (ConfigParser): Parsed INI data.

        Raises:
            ConfigFormatError: If a value cannot be parsed or coerced to the expected type.
        """
        for section in fields(self.config):
            if section.name not in FIXED_SECTIONS:
                continue
            if not parser.has_section(section.name):
                logger.debug("Section '%s' is not defined; using defaults", section.name)
                continue
            self._convert_section(parser, section.name, getattr(self.config, section.name))

    def _convert_bot_sections(self, parser: ConfigParser) -> list[IdentityConfig]:
        """Build one IdentityConfig per ``[BOT.<name>]`` section, in file order."""
        bots: list[IdentityConfig] = []
        for section_name in parser.sections():
            if not section_name.startswith(BOT_SECTION_PREFIX):
                if section_name not in FIXED_SECTIONS:
                    logger.warning("Unknown section '%s' is ignored", section_name)
                continue

            name: str = section_name.removeprefix(BOT_SECTION_PREFIX).strip()
            if not name:
                msg: str = f"Section '{section_name}' has no bot name."
                raise ConfigFormatError(msg)

            identity: IdentityConfig = IdentityConfig(NAME=name)
            self._convert_section(parser, section_name, identity)
            bots.append(identity)
            logger.debug("Loaded bot identity '%s' (transport=%s)", name, identity.TRANSPORT)
        return bots

    def _convert_section(self, parser: ConfigParser, section_name: str, target: Any) -> None:
        """Format every defined key of one section and assign it to ``target``.

        Args:
            parser (ConfigParser): Parsed INI data.
            section_name (str): Name of the INI section.
            target (Any): Dataclass instance that receives the values.

        Raises:
            ConfigFormatError: If a value fails to format correctly.
        """
        formatter = _ConfigFormatter(parser)
        for key in fields(target):
            if not parser.has_option(section_name, key.name):
                logger.debug("Skipping undefined setting: '%s.%s'", section_name, key.name)
                continue

            formatted_value = formatter.apply_format(section_name, key, getattr(target, key.name))
            setattr(target, key.name, formatted_value)

    def _validate_settings(self) -> None:
        """Validate every bot identity.

        Raises:
            ConfigFormatError: If validation fails for any setting.
        """
        if not self.config.BOTS:
            logger.warning("No '[%s<name>]' section is defined; no bot will be started.", BOT_SECTION_PREFIX)

        seen: set[str] = set()
        for bot in self.config.BOTS:
            section_name: str = f"{BOT_SECTION_PREFIX}{bot.NAME}"
            if bot.route_name in seen:
                msg: str = f"Duplicate bot name '{bot.NAME}'."
                raise ConfigValueError(msg)
            seen.add(bot.route_name)

            self._validate_username(section_name, "BOT_USERNAME", bot.BOT_USERNAME)
            self._validate_user_id(section_name, "BOT_USER_ID", bot.BOT_USER_ID)
            self._validate_user_id(section_name, "CHANNEL_USER_ID", bot.CHANNEL_USER_ID)
            self._inspect_defined_item(section_name, "TRANSPORT", bot.TRANSPORT, ALLOWED_TRANSPORTS)
            self._validate_commands(section_name, bot)

    def _validate_username(self, section_name: str, key_name: str, value: str) -> None:
        """Validate username against Twitch requirements (4-25 chars, alphanumeric + underscore).

        Logs a warning if the username is not lowercase.
        """
        field_name: str = f"{section_name}.{key_name}"

        if not isinstance(value, str) or not re.match(r"^[a-zA-Z0-9_]{4,25}$", value):
            msg: str = f"'{field_name}' contains invalid characters. Only alphanumeric and underscores are allowed."
            raise ConfigFormatError(msg)
        if not value.islower():
            logger.warning("The value for '%s' should be all lowercase.", field_name)

    def _validate_user_id(self, section_name: str, key_name: str, value: str) -> None:
        """Twitch user ids are non-empty strings of digits."""
        field_name: str = f"{section_name}.{key_name}"
        if isinstance(value, int):
            msg: str = f"'{field_name}' must be a quoted string, not a number."
            raise ConfigTypeError(msg)
        if not isinstance(value, str) or not value.isdigit():
            msg = f"'{field_name}' must be a numeric Twitch user id: {value!r}"
            raise ConfigValueError(msg)

    def _inspect_defined_item(self, section_name: str, key_name: str, value: str, defined: tuple[str, ...]) -> None:
        """Verify that a configuration value is one of the allowed options.

        Raises:
            ConfigTypeError: If the configured value is not a str.
            ConfigValueError: If the value is not allowed.
        """
        field_name: str = f"{section_name}.{key_name}"
        if not isinstance(value, str):
            msg: str = f"Unsupported type used for '{field_name}': {type(value)}"
            raise ConfigTypeError(msg)
        if value not in defined:
            msg = f"Unknown value '{value}' is set for '{field_name}'. Allowed: {', '.join(defined)}"
            raise ConfigValueError(msg)

    def _validate_commands(self, section_name: str, bot: IdentityConfig) -> None:
        """Check the static command table and normalize its names to lowercase without prefix."""
        field_name: str = f"{section_name}.COMMANDS"
        if not isinstance(bot.COMMANDS, dict):
            msg: str = f"Unsupported type used for '{field_name}': {type(bot.COMMANDS)}"
            raise ConfigTypeError(msg)
        if not bot.COMMAND_PREFIX or any(c.isspace() for c in bot.COMMAND_PREFIX):
            msg = f"'{section_name}.COMMAND_PREFIX' must be a non-empty string without whitespace."
            raise ConfigValueError(msg)

        normalized: dict[str, str] = {}
        for name, text in bot.COMMANDS.items():
            if not isinstance(name, str) or not isinstance(text, str):
                msg = f"'{field_name}' must map command names to reply texts: {name!r}"
                raise ConfigTypeError(msg)
            key: str = name.removeprefix(bot.COMMAND_PREFIX).lower()
            if not key or any(c.isspace() for c in key):
                msg = f"Invalid command name in '{field_name}': {name!r}"
                raise ConfigValueError(msg)
            normalized[key] = text
        bot.COMMANDS = normalized


class _ConfigFormatter:
    """Converts INI string values to typed Python objects (bool, int, float, str, dict)."""

    def __init__(self, parser: ConfigParser) -> None:
        self.parser: ConfigParser = parser

    def apply_format(self, section_name: str, key: DataclassField[Any], current: Any) -> Any:
        """Convert an INI value to the type of the field's current (default) value.

        Args:
            section_name (str): Section containing the key.
            key (DataclassField[Any]): Target field within the section.
            current (Any): Current value of the field, whose type decides the conversion.

        Returns:
            Any: Parsed value coerced to the declared type.

        Raises:
            ConfigValueError: If a value cannot be coerced to the expected type.
            ConfigFormatError: If literal evaluation fails due to invalid syntax.
            ConfigTypeError: If an unexpected type is encountered during coercion.
        """
        formatters: dict[type[bool | int | float], Callable[[str, str], bool | int | float]] = {
            bool: self.parse_as_boolean,
            int: self.parse_as_integer,
            float: self.parse_as_float,
        }

        formatter: Callable[[str, str], bool | int | float] | None = formatters.get(type(current))
        if formatter:
            try:
                return formatter(section_name, key.name)
            except ValueError as err:
                msg = f"Invalid value for {section_name}.{key.name}: {err}"
                raise ConfigValueError(msg) from err
            except TypeError as err:
                msg = f"Invalid value for {section_name}.{key.name}: {err}"
                raise ConfigTypeError(msg) from err

        value_str: str = self.parser.get(section_name, key.name)
        try:
            value: Any = ast.literal_eval(value_str)
        except ValueError as err:
            msg = f"Invalid literal for {section_name}.{key.name}: {value_str}"
            raise ConfigValueError(msg) from err
        except SyntaxError as err:
            msg = f"Invalid literal for {section_name}.{key.name}: {value_str}"
            raise ConfigFormatError(msg) from err

        if isinstance(current, str) and not isinstance(value, str):
            # user ids are checked later with a clearer message
            if key.name.endswith("_USER_ID"):
                return value
            msg = f"Expected a quoted string for {section_name}.{key.name}: {value_str}"
            raise ConfigTypeError(msg)
        return value

    def parse_as_float(self, section_name: str, key_name: str) -> float:
        """Convert INI string to float."""
        value: str = self.parser.get(section_name, key_name)
        for char in ("'", '"'):
            value = value.removeprefix(char).removesuffix(char)
        return float(value)

    def parse_as_integer(self, section_name: str, key_name: str) -> int:
        """Convert INI string to integer."""
        value: str = self.parser.get(section_name, key_name)
        for char in ("'", '"'):
            value = value.removeprefix(char).removesuffix(char)
        return int(float(value))

    def parse_as_boolean(self, section_name: str, key_name: str) -> bool:
        """Convert INI string to boolean."""
        return self.parser.getboolean(section_name, key_name)
