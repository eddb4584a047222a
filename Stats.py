# Stats.py

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from errors import DecodeError, InputError
from utils import format_ratio, ratio

SOLO = "solo"
DUO = "duo"
SQUAD = "squad"
MODES = (SOLO, DUO, SQUAD)

TOUCH = "touch"
GAMEPAD = "gamepad"
KEYBOARD_MOUSE = "keyboardmouse"
INPUT_METHODS = (TOUCH, GAMEPAD, KEYBOARD_MOUSE)

MODE = "mode"
INPUT = "input"
METRIC = "metric"

METRIC_TOKENS = (
    ("placetop1", (METRIC, "wins")),
    ("placetop3", (METRIC, "top3")),
    ("placetop5", (METRIC, "top5")),
    ("placetop6", (METRIC, "top6")),
    ("placetop10", (METRIC, "top10")),
    ("placetop12", (METRIC, "top12")),
    ("placetop25", (METRIC, "top25")),
    ("matchesplayed", (METRIC, "matches")),
    ("kills", (METRIC, "kills")),
    ("score", (METRIC, "score")),
    ("minutesplayed", (METRIC, "minutes_played")),
    ("lastmodified", (METRIC, "last_modified")),
)

# s11_social_bp_level = 1234 -> level 12, 34% towards level 13
PROGRESSION_PATTERNS = (
    re.compile(r"^s(?P<season>\d+)_social_bp_level$"),
    re.compile(r"^s(?P<season>\d+)_accountlevel$"),
)


@dataclass
class StatDetails:
    wins: int = 0
    top3: int = 0  # Squad-only
    top5: int = 0  # Duo-only
    top6: int = 0  # Squad-only
    top10: int = 0  # Solo-only
    top12: int = 0  # Duo-only
    top25: int = 0  # Solo-only
    matches: int = 0
    kills: int = 0
    minutes_played: int = 0
    score: int = 0
    last_modified: int = 0

    @property
    def kill_death_ratio(self) -> str:
        # Every match that is not a win ends in exactly one death.
        return format_ratio(ratio(self.kills, self.matches - self.wins))

    @property
    def win_percentage(self) -> str:
        return format_ratio(ratio(self.wins, self.matches) * 100)

    @property
    def kills_per_match(self) -> str:
        return format_ratio(ratio(self.kills, self.matches))

    @property
    def kills_per_minute(self) -> str:
        return format_ratio(ratio(self.kills, self.minutes_played))

    def add(self, metric: str, value: int) -> None:
        if metric == "last_modified":
            self.last_modified = max(self.last_modified, value)
        else:
            setattr(self, metric, getattr(self, metric) + value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wins": self.wins,
            "top3": self.top3,
            "top5": self.top5,
            "top6": self.top6,
            "top10": self.top10,
            "top12": self.top12,
            "top25": self.top25,
            "matches": self.matches,
            "kills": self.kills,
            "minutesPlayed": self.minutes_played,
            "score": self.score,
            "lastModified": self.last_modified,
            "killDeathRatio": self.kill_death_ratio,
            "winPercentage": self.win_percentage,
            "killsPerMatch": self.kills_per_match,
            "killsPerMinute": self.kills_per_minute,
        }


def _empty_buckets() -> Dict[Tuple[str, str], StatDetails]:
    return {(mode, input_method): StatDetails() for mode in MODES for input_method in INPUT_METHODS}


@dataclass
class PlayerStats:
    account_id: str
    source: str
    buckets: Dict[Tuple[str, str], StatDetails] = field(default_factory=_empty_buckets)
    level: int = 0
    percent_until_next_level: int = 0
    raw: Dict[str, int] = field(default_factory=dict)

    def bucket(self, mode: str, input_method: str) -> StatDetails:
        try:
            return self.buckets[(mode, input_method)]
        except KeyError:
            raise InputError(f"unknown bucket {mode}/{input_method}") from None

    def mode(self, mode: str) -> Dict[str, StatDetails]:
        return {input_method: self.bucket(mode, input_method) for input_method in INPUT_METHODS}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "source": self.source,
            "level": self.level,
            "percentUntilNextLevel": self.percent_until_next_level,
            "stats": {
                mode: {input_method: details.to_dict() for input_method, details in self.mode(mode).items()}
                for mode in MODES
            },
        }


class KeyVocabulary:
    """Maps stat keys from one upstream endpoint onto (mode, input method, metric).

    Keys are split on ``_`` and every segment is looked up in ``table``; for
    each dimension the first matching segment wins. Exact segment lookup keeps
    ``placetop1`` from being read out of ``placetop10``.
    """

    def __init__(self, name: str, table: Iterable[Tuple[str, Tuple[str, str]]]):
        self.name = name
        self.table = dict(table)

    def classify(self, key: str) -> Optional[Tuple[str, str, str]]:
        found: Dict[str, str] = {}
        for segment in key.lower().split("_"):
            match = self.table.get(segment)
            if match is not None:
                found.setdefault(match[0], match[1])

        if MODE not in found or INPUT not in found or METRIC not in found:
            return None
        return found[MODE], found[INPUT], found[METRIC]

    def bag_from_payload(self, payload: Any) -> Dict[str, int]:
        raise NotImplementedError


class CurrentVocabulary(KeyVocabulary):
    """Stats v2 keys such as ``br_kills_gamepad_m0_playlist_defaultsolo``."""

    def __init__(self):
        super().__init__("v2", (
            ("solo", (MODE, SOLO)),
            ("defaultsolo", (MODE, SOLO)),
            ("duo", (MODE, DUO)),
            ("defaultduo", (MODE, DUO)),
            ("squad", (MODE, SQUAD)),
            ("defaultsquad", (MODE, SQUAD)),
            ("touch", (INPUT, TOUCH)),
            ("gamepad", (INPUT, GAMEPAD)),
            ("keyboardmouse", (INPUT, KEYBOARD_MOUSE)),
        ) + METRIC_TOKENS)

    def bag_from_payload(self, payload: Any) -> Dict[str, int]:
        if not isinstance(payload, dict):
            raise DecodeError("stats v2 response is not an object")
        stats = payload.get("stats") or {}
        if not isinstance(stats, dict):
            raise DecodeError("stats v2 response has no stats object")
        try:
            return {str(key): int(value) for key, value in stats.items()}
        except (TypeError, ValueError) as e:
            raise DecodeError("stats v2 response holds a non integer counter") from e


class LegacyVocabulary(KeyVocabulary):
    """Bulk window keys such as ``br_placetop1_pc_m0_p2``.

    Older clients filed keys without a party token under squad; such keys are
    now dropped like any other unscoped key.
    """

    def __init__(self):
        super().__init__("v1", (
            ("p2", (MODE, SOLO)),
            ("p10", (MODE, DUO)),
            ("p9", (MODE, SQUAD)),
            ("pc", (INPUT, KEYBOARD_MOUSE)),
            ("xb1", (INPUT, GAMEPAD)),
            ("ps4", (INPUT, GAMEPAD)),
        ) + METRIC_TOKENS)

    def bag_from_payload(self, payload: Any) -> Dict[str, int]:
        if not isinstance(payload, list):
            raise DecodeError("bulk stats response is not a list")
        bag: Dict[str, int] = {}
        try:
            for record in payload:
                bag[str(record["name"])] = int(record["value"])
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError("bulk stats record is missing a name or value") from e
        return bag


VOCABULARIES: Dict[str, KeyVocabulary] = {
    "v1": LegacyVocabulary(),
    "v2": CurrentVocabulary(),
}


def get_vocabulary(source: str) -> KeyVocabulary:
    try:
        return VOCABULARIES[source]
    except KeyError:
        raise InputError(f"unknown stats source '{source}'") from None


def bag_from_payload(payload: Any, source: str = "v2") -> Dict[str, int]:
    return get_vocabulary(source).bag_from_payload(payload)


def split_progression(value: int) -> Tuple[int, int]:
    return value // 100, value % 100


def _progression(raw_bag: Mapping[str, int]) -> Tuple[int, int]:
    # Battle pass counters take precedence over account level, newest season first.
    for pattern in PROGRESSION_PATTERNS:
        candidates = []
        for key, value in raw_bag.items():
            match = pattern.match(key.lower())
            if match:
                candidates.append((int(match.group("season")), value))
        if candidates:
            return split_progression(max(candidates)[1])
    return 0, 0


def normalize(raw_bag: Mapping[str, int], account_id: str, source: str = "v2") -> PlayerStats:
    vocabulary = get_vocabulary(source)
    stats = PlayerStats(account_id=account_id, source=vocabulary.name, raw=dict(raw_bag))

    for key, value in raw_bag.items():
        classified = vocabulary.classify(key)
        if classified is None:
            continue
        mode, input_method, metric = classified
        stats.buckets[(mode, input_method)].add(metric, int(value))

    stats.level, stats.percent_until_next_level = _progression(raw_bag)
    return stats
