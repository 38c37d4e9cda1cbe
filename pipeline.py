"""Text pipeline: ordered, individually enabled transcript transformations."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from interfaces import PipelineStage
from models import FormattingStyle, PipelineContext, PipelineResult, ShortcutEntry
from voice_commands import CommandLevel, apply_voice_commands

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_LINE_BREAK = re.compile(r"\r?\n")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.;!?])")
_DOT_RUN = re.compile(r"\.{3,}")
_SPACE_RUN = re.compile(r"[ \t]{2,}")
_SHORTCUT_EDGES = re.compile(r"^[\s\"'“”‘’()\[\]{}<>]+|[\s\"'“”‘’()\[\]{}<>]+$")
_TRAILING_PUNCT = re.compile(r"[.,!?;:]+$")


def _per_line(text: str, transform) -> str:
    if "\n" not in text and "\r" not in text:
        return transform(text)
    return "\n".join(transform(line) for line in _LINE_BREAK.split(text)).strip()


class Stage(ABC):
    """A pure ``(text, context) -> text`` transformation."""

    id: str

    @abstractmethod
    def enabled(self, context: PipelineContext) -> bool:
        """Whether the stage runs for this context."""

    @abstractmethod
    def run(self, text: str, context: PipelineContext) -> str:
        """Transform ``text``."""


class WhitespaceNormalizationStage(Stage):
    id = "whitespace-normalization"

    def enabled(self, context: PipelineContext) -> bool:
        return True

    def run(self, text: str, context: PipelineContext) -> str:
        return _per_line(text, lambda line: _WHITESPACE.sub(" ", line).strip())


def normalize_shortcut_keyword(value: str) -> str:
    value = _SHORTCUT_EDGES.sub("", value.strip())
    value = _TRAILING_PUNCT.sub("", value)
    return _WHITESPACE.sub(" ", value).lower()


def apply_shortcuts(text: str, shortcuts: Sequence[ShortcutEntry]) -> str:
    """Replace the whole input by a snippet when it is exactly a shortcut keyword."""
    if not text.strip():
        return text
    candidate = normalize_shortcut_keyword(text)
    if not candidate:
        return text
    for entry in shortcuts:
        if normalize_shortcut_keyword(entry.keyword) == candidate:
            return entry.snippet
    return text


class ShortcutStage(Stage):
    id = "shortcuts"

    def enabled(self, context: PipelineContext) -> bool:
        return bool(context.mode and context.mode.shortcuts_enabled and context.shortcuts)

    def run(self, text: str, context: PipelineContext) -> str:
        return apply_shortcuts(text, context.shortcuts)


class FormattingCommandStage(Stage):
    id = "formatting-commands"

    def enabled(self, context: PipelineContext) -> bool:
        mode = context.mode
        return bool(mode and (mode.formatting_enabled or mode.punctuation_commands_enabled))

    def run(self, text: str, context: PipelineContext) -> str:
        mode = context.mode
        style = mode.formatting_style if mode else FormattingStyle.PLAIN
        level = CommandLevel.FULL if mode and mode.formatting_enabled else CommandLevel.PUNCTUATION
        return apply_voice_commands(text, FormattingStyle(style), level)


def _normalize_punctuation_line(line: str) -> str:
    line = _SPACE_BEFORE_PUNCT.sub(r"\1", line)
    line = _DOT_RUN.sub("...", line)
    line = _SPACE_RUN.sub(" ", line)
    return line.strip()


class PunctuationNormalizationStage(Stage):
    id = "punctuation-normalization"

    def enabled(self, context: PipelineContext) -> bool:
        if context.mode and context.mode.punctuation_normalization is not None:
            return context.mode.punctuation_normalization
        return context.settings.punctuation_normalization

    def run(self, text: str, context: PipelineContext) -> str:
        return _per_line(text, _normalize_punctuation_line)


class VocabularyReplacementStage(Stage):
    id = "vocabulary-replacements"

    def enabled(self, context: PipelineContext) -> bool:
        return len(context.vocabulary) > 0

    def run(self, text: str, context: PipelineContext) -> str:
        for entry in context.vocabulary:
            if not entry.source:
                continue
            pattern = re.compile(rf"\b{re.escape(entry.source)}\b", re.IGNORECASE)
            # A callable keeps backslashes in the replacement literal.
            text = pattern.sub(lambda _match, value=entry.replacement: value, text)
        return text


class KeywordCommandStage(Stage):
    """Reserved for command extraction; passes text through unchanged."""

    id = "keyword-commands"

    def enabled(self, context: PipelineContext) -> bool:
        return True

    def run(self, text: str, context: PipelineContext) -> str:
        return text


def default_stages() -> list[PipelineStage]:
    return [
        WhitespaceNormalizationStage(),
        ShortcutStage(),
        FormattingCommandStage(),
        PunctuationNormalizationStage(),
        VocabularyReplacementStage(),
        KeywordCommandStage(),
    ]


class Pipeline:
    """Folds text through every enabled stage, left to right."""

    def __init__(self, stages: Optional[Sequence[PipelineStage]] = None) -> None:
        self.stages = list(stages) if stages is not None else default_stages()

    def run(self, text: str, context: PipelineContext) -> PipelineResult:
        steps: list[str] = []
        for stage in self.stages:
            if not stage.enabled(context):
                continue
            steps.append(stage.id)
            text = stage.run(text, context)
        logger.debug("pipeline applied %s", steps)
        return PipelineResult(text=text, steps_applied=tuple(steps))


def run_pipeline(text: str, context: PipelineContext, stages: Optional[Sequence[PipelineStage]] = None) -> str:
    return Pipeline(stages).run(text, context).text
