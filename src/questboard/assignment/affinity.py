"""Task affinity classification.

A classifier maps a task onto one of the six :class:`AffinityTag` values so
the scorer can compare it with member profiles. The scorer only depends on
the :class:`AffinityClassifier` interface; keyword matching is one
implementation among others.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional

from ..domain.models import AffinityTag, Task

# Checked in order; the first matching tag wins.
KEYWORD_PATTERNS: tuple[tuple[AffinityTag, re.Pattern[str]], ...] = (
    (AffinityTag.WONDER, re.compile(r"\b(why|what if|explore|question|research|investigate|analy[sz]e|understand)")),
    (AffinityTag.INVENTION, re.compile(r"\b(create|design|invent|build|develop|innovate|prototype|draft|sketch)")),
    (AffinityTag.DISCERNMENT, re.compile(r"\b(evaluate|judge|assess|analy[sz]e|compare|decide|review|critique|choose)")),
    (AffinityTag.GALVANIZING, re.compile(r"\b(launch|start|initiate|mobilize|motivate|begin|kickoff|kick off|announce)")),
    (AffinityTag.ENABLEMENT, re.compile(r"\b(implement|execute|support|enable|facilitate|organi[sz]e|set ?up|configure)")),
    (AffinityTag.TENACITY, re.compile(r"\b(finish|complete|follow through|persist|maintain|endure|polish|refine)")),
)

DEFAULT_TAG = AffinityTag.ENABLEMENT


class AffinityClassifier(ABC):
    @abstractmethod
    def classify(self, task: Task) -> AffinityTag:
        raise NotImplementedError


class KeywordAffinityClassifier(AffinityClassifier):
    """Guess a tag from the words in the task's title, description and definition of done."""

    def __init__(self, default: AffinityTag = DEFAULT_TAG) -> None:
        self.default = default

    def classify(self, task: Task) -> AffinityTag:
        text = " ".join(part for part in (task.title, task.description, task.dod) if part).lower()
        for tag, pattern in KEYWORD_PATTERNS:
            if pattern.search(text):
                return tag
        return self.default


class ExplicitPhaseClassifier(AffinityClassifier):
    """Use the task's own ``phase`` when it names a tag; otherwise defer to *fallback*."""

    def __init__(self, fallback: Optional[AffinityClassifier] = None) -> None:
        self.fallback = fallback or KeywordAffinityClassifier()

    def classify(self, task: Task) -> AffinityTag:
        tag = AffinityTag.parse(task.phase)
        if tag is not None:
            return tag
        return self.fallback.classify(task)
