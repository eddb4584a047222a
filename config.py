# config.py

import configparser
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from Logger import Logger

PROXY_SCHEMES = ("http", "https", "socks5", "socks5h")


class ConfigValidationError(ValueError):
	"""Raised when a configuration value cannot be parsed or validated."""


@dataclass(frozen=True)
class ConfigIssue:
	section: str
	key: str
	message: str
	reverted_to: Optional[str] = None


@dataclass(frozen=True)
class ClientSettings:
	launcher_token: str = ""
	game_token: str = ""
	use_proxy: bool = False
	proxy_url: str = "socks5h://127.0.0.1:9050"
	request_timeout: float = 15.0
	proxy_timeout: float = 120.0
	renew_interval: float = 20.0
	renew_margin: float = 60.0
	log_file: str = "logs/epic"
	debug: bool = False

	@property
	def timeout(self) -> float:
		return self.proxy_timeout if self.use_proxy else self.request_timeout


def _parse_bool(raw: str) -> bool:
	try:
		return configparser.ConfigParser.BOOLEAN_STATES[raw.lower()]
	except KeyError:
		raise ConfigValidationError("Expected a boolean value (true/false).") from None


def _parse_float(raw: str) -> float:
	try:
		return float(raw)
	except ValueError:
		raise ConfigValidationError("Expected a number.") from None


def _parse_proxy_url(raw: str) -> str:
	if raw.split("://", 1)[0].lower() not in PROXY_SCHEMES:
		raise ConfigValidationError(f"Value '{raw}' is not a supported proxy URL ({', '.join(PROXY_SCHEMES)}).")
	return raw


@dataclass(frozen=True)
class Setting:
	"""One ``key = value`` line of the settings file, named after its ClientSettings field."""
	section: str
	key: str
	comment: str
	parse: Callable[[str], Any] = str
	low: Optional[float] = None
	high: Optional[float] = None

	def read(self, raw: str) -> Any:
		value = self.parse(raw.strip())
		if self.low is not None and not self.low <= value <= self.high:
			raise ConfigValidationError(f"Value must be between {self.low:g} and {self.high:g}.")
		return value

	@staticmethod
	def render(value: Any) -> str:
		if isinstance(value, bool):
			return "true" if value else "false"
		if isinstance(value, float):
			return f"{value:g}"
		return str(value)


SECTION_COMMENTS = {
	"Client": "Base64 encoded 'client_id:secret' pairs used for the Basic authorization header.",
}

SETTINGS: Tuple[Setting, ...] = (
	Setting("Client", "launcher_token", "Launcher client credentials, used to redeem the login exchange code."),
	Setting("Client", "game_token", "Game client credentials, used for the final token and every refresh."),
	Setting("Network", "use_proxy", "Route every request through proxy_url. Default = false.", _parse_bool),
	Setting("Network", "proxy_url", "Proxy used when use_proxy is enabled. Default = local Tor daemon.",
			_parse_proxy_url),
	Setting("Network", "request_timeout", "Seconds before a direct request is abandoned. Default = 15.",
			_parse_float, 1, 600),
	Setting("Network", "proxy_timeout", "Seconds before a proxied request is abandoned. Default = 120.",
			_parse_float, 1, 600),
	Setting("Session", "renew_interval", "Seconds between two token expiry checks. Default = 20.",
			_parse_float, 0.01, 3600),
	Setting("Session", "renew_margin", "Refresh once fewer than this many seconds of token lifetime remain. "
			"Default = 60.", _parse_float, 0, 3600),
	Setting("Logging", "log_file", "Log file prefix; the date and .log are appended."),
	Setting("Logging", "debug", "Echo every log line to the console. Default = false.", _parse_bool),
)


def read_settings(parser: configparser.ConfigParser) -> Tuple[ClientSettings, List[ConfigIssue]]:
	"""Build settings from ``parser``. Missing or invalid entries keep their default and are reported."""
	defaults = ClientSettings()
	values = {}
	issues: List[ConfigIssue] = []

	for section in dict.fromkeys(setting.section for setting in SETTINGS):
		if not parser.has_section(section):
			issues.append(ConfigIssue(section, "*", "Section missing in file; populated with defaults."))

	for setting in SETTINGS:
		default = Setting.render(getattr(defaults, setting.key))
		raw = parser.get(setting.section, setting.key, fallback=None)
		if raw is None:
			if parser.has_section(setting.section):
				issues.append(ConfigIssue(setting.section, setting.key, "Missing entry; default applied.", default))
			continue
		try:
			values[setting.key] = setting.read(raw)
		except ConfigValidationError as e:
			issues.append(ConfigIssue(setting.section, setting.key, str(e), default))

	return replace(defaults, **values), issues


def render_settings(settings: ClientSettings) -> str:
	lines: List[str] = []
	section = None
	for setting in SETTINGS:
		if setting.section != section:
			section = setting.section
			if lines:
				lines.append("")
			if section in SECTION_COMMENTS:
				lines.append(f"; {SECTION_COMMENTS[section]}")
			lines.append(f"[{section}]")
		lines.append(f"; {setting.comment}")
		lines.append(f"{setting.key} = {Setting.render(getattr(settings, setting.key))}")
	return "\n".join(lines) + "\n"


def load_settings(path: Path | str) -> Tuple[ClientSettings, List[ConfigIssue]]:
	"""Load the settings file at ``path``, creating it when missing.

	The file is rewritten in canonical form whenever it differs, so reverted
	values and missing entries are visible to the user afterwards.
	"""
	path = Path(path)
	if path.exists():
		parser = configparser.ConfigParser(interpolation=None)
		parser.read(path, encoding="utf-8")
		settings, issues = read_settings(parser)
		current = path.read_text(encoding="utf-8")
	else:
		settings, issues, current = ClientSettings(), [], None

	text = render_settings(settings)
	if text != current:
		path.parent.mkdir(parents=True, exist_ok=True)
		path.write_text(text, encoding="utf-8")
	return settings, issues


def build_logger(settings: ClientSettings) -> Logger:
	return Logger("fortnite-stats", settings.log_file, echo=settings.debug)
