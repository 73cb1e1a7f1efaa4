# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
Shared lexicon — every keyword list and phrase pattern the engine matches on.

Goal detection, contradiction detection and burnout scoring all read from
here, keyed by category, so a phrase is defined once.

Three match modes:
  - "phrase": case-insensitive substring (burnout lexicons)
  - "word":   case-insensitive whole-word match (contradiction cues)
  - "regex":  case-insensitive patterns (goal language)
"""

import re
from typing import Dict, List, Optional, Pattern, Tuple

# ============================================================================
# Categories
# ============================================================================

FATIGUE = "fatigue"
EMOTIONAL_EXHAUSTION = "emotional_exhaustion"
OVERWORK = "overwork"
PHYSICAL_SYMPTOMS = "physical_symptoms"
RECOVERY = "recovery"
NEGATIVE_SENTIMENT = "negative_sentiment"
AVOIDANCE = "avoidance"
GOAL_DECLARATION = "goal_declaration"
GOAL_TERMINATION = "goal_termination"
GOAL_ACHIEVEMENT = "goal_achievement"
GOAL_PROGRESS = "goal_progress"

PHRASES: Dict[str, Tuple[str, ...]] = {
    FATIGUE: (
        "tired", "exhausted", "drained", "burned out", "burnout", "burnt out",
        "can't keep up", "running on empty", "no energy", "depleted",
        "wiped out", "worn out", "fatigued", "spent", "tapped out",
    ),
    OVERWORK: (
        "overtime", "working late", "late night", "weekend work", "no break",
        "back-to-back", "non-stop", "nonstop", "slammed", "swamped",
        "drowning in work", "too many meetings", "endless meetings",
        "never-ending", "piling up", "behind on everything",
    ),
    PHYSICAL_SYMPTOMS: (
        "eyes hurt", "eye strain", "headache", "migraine", "can't sleep",
        "insomnia", "stress eating", "not eating", "skipping meals",
        "neck pain", "back pain", "tense", "tension", "grinding teeth",
        "jaw clenching", "stomach issues", "nauseous", "heart racing",
    ),
    EMOTIONAL_EXHAUSTION: (
        "overwhelmed", "drowning", "nothing left", "running on empty",
        "can't take it", "at my limit", "breaking point", "losing it",
        "falling apart", "shutting down", "checked out", "going through motions",
        "don't care anymore", "what's the point", "empty inside",
    ),
    RECOVERY: (
        "took a break", "rested", "day off", "vacation", "relaxed",
        "recharged", "feeling better", "recovered", "self-care",
        "walked away", "logged off", "unplugged", "disconnected",
    ),
}

WORDS: Dict[str, Tuple[str, ...]] = {
    NEGATIVE_SENTIMENT: ("hate", "dread", "can't stand", "annoying", "terrible", "worst"),
    AVOIDANCE: ("avoid", "cut back", "quit", "stop", "less"),
}

PATTERNS: Dict[str, Tuple[str, ...]] = {
    # Group 1 (or 2) captures the goal description
    GOAL_DECLARATION: (
        r"I want to\s+(.+)",
        r"I('m| am) going to\s+(.+)",
        r"planning to\s+(.+)",
        r"my goal is to\s+(.+)",
        r"I('m| am) working on\s+(.+)",
        r"trying to\s+(.+)",
        r"hoping to\s+(.+)",
    ),
    GOAL_TERMINATION: (
        r"I('m| am) (no longer|not) (interested in|pursuing|going after)",
        r"decided (against|not to)",
        r"giving up on",
        r"moving on from",
        r"that('s| is) (not|no longer) (a priority|important)",
        r"changed my mind about",
        r"I don't want to anymore",
        r"not going to happen",
        r"abandoning",
        r"letting go of",
    ),
    GOAL_ACHIEVEMENT: (
        r"I (did it|made it|got it|achieved|accomplished)",
        r"finally\s+(.+)ed",
        r"succeeded in",
        r"completed",
        r"finished",
        r"reached my goal",
        r"mission accomplished",
        r"got the (job|offer|promotion)",
    ),
    GOAL_PROGRESS: (
        r"making progress on",
        r"step closer to",
        r"working towards",
        r"getting better at",
        r"improving",
        r"on track",
    ),
}

GOAL_TAG_RE = re.compile(r"@goal:([a-z_]+)", re.IGNORECASE)

_compiled_patterns: Dict[str, List[Pattern]] = {
    category: [re.compile(p, re.IGNORECASE) for p in patterns]
    for category, patterns in PATTERNS.items()
}

_compiled_words: Dict[str, Pattern] = {
    category: re.compile(r"\b(" + "|".join(re.escape(w) for w in words) + r")\b", re.IGNORECASE)
    for category, words in WORDS.items()
}


# ============================================================================
# Matching
# ============================================================================

def find_phrases(text: Optional[str], *categories: str) -> List[str]:
    """Phrases from the given categories that occur in text (deduplicated, in lexicon order)."""
    if not text:
        return []
    lowered = text.lower()
    found = []
    for category in categories:
        for phrase in PHRASES[category]:
            if phrase in lowered and phrase not in found:
                found.append(phrase)
    return found


def has_phrase(text: Optional[str], *categories: str) -> bool:
    return bool(find_phrases(text, *categories))


def has_word(text: Optional[str], category: str) -> bool:
    if not text:
        return False
    return _compiled_words[category].search(text) is not None


def first_match(text: Optional[str], category: str) -> Optional[re.Match]:
    """First pattern in the category (in declared order) that matches text."""
    if not text:
        return None
    for pattern in _compiled_patterns[category]:
        match = pattern.search(text)
        if match:
            return match
    return None


def matches(text: Optional[str], category: str) -> bool:
    return first_match(text, category) is not None
