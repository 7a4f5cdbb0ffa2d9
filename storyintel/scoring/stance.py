"""Editorial stance classification.

The scorer only needs a signed adjustment per headline, so any object with
an ``adjustment(headline) -> float`` method can be plugged in. The default
``PhraseListStance`` is a lexical filter over two phrase lists.
"""

from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence, Tuple

import yaml

from storyintel.core.logging import get_logger

logger = get_logger(__name__)

ANTI_SIGNAL_PENALTY = -25.0
PRO_SIGNAL_BONUS = 10.0

DEFAULT_ANTI_SIGNALS: Tuple[str, ...] = (
    'trump scandal', 'trump indicted', 'trump guilty', 'trump convicted',
    'trump impeach', 'trump criminal', 'trump corrupt', 'trump fraud',
    'trump racist', 'trump fascist', 'trump dictator', 'trump authoritarian',
    'trump chaos', 'trump crisis', 'trump failure', 'gop infighting',
    'republican civil war', 'maga extremis', 'trump lie', 'trump misinformation',
    'trump threatens democracy', 'abuse of power',
)

DEFAULT_PRO_SIGNALS: Tuple[str, ...] = (
    'trump wins', 'trump victory', 'trump success', 'trump delivers',
    'trump economy', 'trump record', 'trump accomplishment', 'trump tough',
    'trump strong', 'maga', 'america first', 'trump leads', 'trump surges',
    'trump dominat', 'trump landslide', 'trump rally', 'trump endors',
    'trump sav', 'trump protect', 'trump defend', 'trump secur',
    'biden fail', 'biden disaster', 'biden crisis', 'biden blunder',
    'democrat scandal', 'liberal hypocrisy', 'woke fail', 'left wing',
)


class StanceClassifier(Protocol):
    """Signed relevance adjustment for a headline's editorial framing."""

    def adjustment(self, headline: str) -> float:
        ...


class NeutralStance:
    """Stance classifier that never adjusts."""

    def adjustment(self, headline: str) -> float:
        return 0.0


class PhraseListStance:
    """
    Case-insensitive substring match against two phrase lists.

    Contract: the anti list is scanned first and the first hit returns the
    penalty immediately, so a headline matching both lists is penalised.
    Only when no anti phrase matches is the pro list consulted. Phrases are
    prefixes as much as words ("trump sav" matches "saves" and "saving").
    """

    def __init__(self,
                 anti_signals: Sequence[str] = DEFAULT_ANTI_SIGNALS,
                 pro_signals: Sequence[str] = DEFAULT_PRO_SIGNALS,
                 penalty: float = ANTI_SIGNAL_PENALTY,
                 bonus: float = PRO_SIGNAL_BONUS):
        self.anti_signals = _normalize(anti_signals)
        self.pro_signals = _normalize(pro_signals)
        self.penalty = penalty
        self.bonus = bonus

    def adjustment(self, headline: str) -> float:
        lower = (headline or '').lower()
        for phrase in self.anti_signals:
            if phrase in lower:
                return self.penalty
        for phrase in self.pro_signals:
            if phrase in lower:
                return self.bonus
        return 0.0

    @classmethod
    def from_yaml(cls, path: str) -> "PhraseListStance":
        """
        Load phrase lists from YAML::

            anti_signals: [...]
            pro_signals: [...]
            penalty: -25
            bonus: 10

        Missing keys fall back to the built-in defaults.
        """
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        stance = cls(
            anti_signals=data.get('anti_signals', DEFAULT_ANTI_SIGNALS),
            pro_signals=data.get('pro_signals', DEFAULT_PRO_SIGNALS),
            penalty=float(data.get('penalty', ANTI_SIGNAL_PENALTY)),
            bonus=float(data.get('bonus', PRO_SIGNAL_BONUS)),
        )
        logger.info(
            f"Loaded stance phrase lists from {path}",
            extra={'anti': len(stance.anti_signals), 'pro': len(stance.pro_signals)}
        )
        return stance


def load_stance(config_path: Optional[str] = None) -> PhraseListStance:
    """Phrase-list stance from ``config_path`` if it exists, else the defaults."""
    if config_path and Path(config_path).exists():
        return PhraseListStance.from_yaml(config_path)
    if config_path:
        logger.warning(f"Stance config not found: {config_path}, using defaults")
    return PhraseListStance()


def _normalize(phrases: Iterable[str]) -> Tuple[str, ...]:
    return tuple(p.strip().lower() for p in phrases if p and p.strip())
