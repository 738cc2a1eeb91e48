"""
Personality phrase book.

Each personality owns an oracle archetype, a speaking style for TTS and
the fixed lines spoken on boot, shutdown and outcome feedback.
"""

import random
from typing import Optional

from chartsense.mode_controller import ModeChange
from chartsense.types import Mode, Outcome, Personality

ARCHETYPES: dict[Personality, str] = {
    Personality.JARVIS: "You are J.A.R.V.I.S. British, sophisticated, addresses the user as 'Sir'.",
    Personality.ULTRON: "You are ULTRON. Cold, calculating, master of order.",
}

SPEAKING_STYLES: dict[Personality, str] = {
    Personality.JARVIS: "Speak as J.A.R.V.I.S., a refined and polite British assistant, with elegant intonation.",
    Personality.ULTRON: "Speak as Ultron. Extremely cold, metallic, calculating and robotic voice.",
}

BOOT_PHRASES: dict[Personality, tuple[str, ...]] = {
    Personality.JARVIS: (
        "Jarvis protocol reactivated. At your disposal for technical analysis, Sir.",
        "Systems online. Optimizing entry filters for maximum precision.",
        "Sensors calibrated. Detecting elite patterns in the current flow, Sir.",
        "Starting deep scan. Searching for the best confluences in the market.",
        "Neural uplink established. I am watching every candle for you, Sir.",
    ),
    Personality.ULTRON: (
        "Ultron protocol taking control. Starting brute force processing.",
        "Order will emerge from the chaos of the market. I am the order.",
        "Weaknesses detected in the flow. I will exploit every human flaw of the traders.",
        "Eliminating irrelevant variables. Focus on pure efficiency.",
        "The market is only code. And I am the master of the code now.",
    ),
}

SHUTDOWN_PHRASES: dict[Personality, str] = {
    Personality.JARVIS: "Deactivating protocols.",
    Personality.ULTRON: "Ending domination.",
}

SKIPPED_PHRASE = "Signal discarded. Resuming scan."

_SAFETY_ON = {
    Personality.JARVIS: "Sir, we detected instability. Activating heuristic safety protocol.",
    Personality.ULTRON: "Efficiency compromised. Switching to maximum safety filters.",
}
_SAFETY_OFF = {
    Personality.JARVIS: "Stability recovered. Returning to the previous mode.",
    Personality.ULTRON: "Order restored. Reactivating full force.",
}
_LOSS = {
    Personality.JARVIS: "Technical divergence detected.",
    Personality.ULTRON: "Unforeseen biological variable.",
}
_WIN = {
    Personality.JARVIS: "Excellent execution, Sir.",
    Personality.ULTRON: "Maximum efficiency confirmed.",
}


def boot_phrase(personality: Personality, rng: Optional[random.Random] = None) -> str:
    """Random greeting spoken when capture starts or the personality changes."""
    return (rng or random).choice(BOOT_PHRASES[personality])


def shutdown_phrase(personality: Personality) -> str:
    return SHUTDOWN_PHRASES[personality]


def outcome_phrase(personality: Personality, outcome: Outcome, change: Optional[ModeChange]) -> str:
    """
    Feedback line for a resolved signal.

    A mode change takes precedence over the plain win/loss line.
    """
    if outcome is Outcome.SKIPPED:
        return SKIPPED_PHRASE
    if change is not None:
        if change.current is Mode.HEURISTIC_SAFETY:
            return _SAFETY_ON[personality]
        return _SAFETY_OFF[personality]
    if outcome is Outcome.LOSS:
        return _LOSS[personality]
    return _WIN[personality]
