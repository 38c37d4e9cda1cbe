"""Voice-command transducer: spoken command phrases to structural text edits.

Tokens are scanned left to right with a single cursor. At each position the
phrase table is tried in order and the first match wins; anything else is
emitted as a word. Sentence-level formatting is a three-state machine
(``PendingFormat``) carried through the loop and cleared by terminal
punctuation or a new line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from models import FormattingStyle


class CommandLevel(str, Enum):
    PUNCTUATION = "punctuation"
    FULL = "full"


class PendingFormat(str, Enum):
    NONE = "none"
    BOLD = "bold"
    ITALIC = "italic"


class _Action(str, Enum):
    NEWLINE = "newline"
    PUNCT = "punct"
    DELETE_WORD = "delete_word"
    DELETE_SENTENCE = "delete_sentence"
    FORMAT_LAST_WORD = "format_last_word"
    FORMAT_NEXT_SENTENCE = "format_next_sentence"
    FORMAT_NEXT_WORD = "format_next_word"


TERMINAL_PUNCTUATION = frozenset(".?!")

_TOKEN = re.compile(r"^(.+?)([.,!?;:]+)?$", re.DOTALL)


def _build_phrases() -> list[tuple[tuple[str, ...], _Action, str]]:
    phrases: list[tuple[tuple[str, ...], _Action, str]] = [
        (("new", "line"), _Action.NEWLINE, ""),
        (("full", "stop"), _Action.PUNCT, "."),
        (("question", "mark"), _Action.PUNCT, "?"),
        (("exclamation", "point"), _Action.PUNCT, "!"),
        (("exclamation", "mark"), _Action.PUNCT, "!"),
        (("comma",), _Action.PUNCT, ","),
        (("period",), _Action.PUNCT, "."),
        (("semicolon",), _Action.PUNCT, ";"),
        (("colon",), _Action.PUNCT, ":"),
        (("dash",), _Action.PUNCT, "—"),
        (("ellipsis",), _Action.PUNCT, "..."),
    ]
    for unit, action in (("word", _Action.DELETE_WORD), ("sentence", _Action.DELETE_SENTENCE)):
        phrases.append((("delete", "last", unit), action, ""))
        phrases.append((("delete", "the", "last", unit), action, ""))
        phrases.append((("delete", "that", "last", unit), action, ""))

    kinds = (PendingFormat.BOLD.value, PendingFormat.ITALIC.value)
    for kind in kinds:
        phrases.append(((kind, "last", "word"), _Action.FORMAT_LAST_WORD, kind))
        phrases.append((("last", "word", kind), _Action.FORMAT_LAST_WORD, kind))
    for kind in kinds:
        phrases.append((("make", "last", "word", kind), _Action.FORMAT_LAST_WORD, kind))
        phrases.append((("make", "the", "last", "word", kind), _Action.FORMAT_LAST_WORD, kind))
    for kind in kinds:
        phrases.append((("make", "next", "sentence", kind), _Action.FORMAT_NEXT_SENTENCE, kind))
        phrases.append((("make", "the", "next", "sentence", kind), _Action.FORMAT_NEXT_SENTENCE, kind))
        phrases.append((("next", "sentence", kind), _Action.FORMAT_NEXT_SENTENCE, kind))
        phrases.append(((kind, "next", "sentence"), _Action.FORMAT_NEXT_SENTENCE, kind))
    for kind in kinds:
        phrases.append((("make", "next", "word", kind), _Action.FORMAT_NEXT_WORD, kind))
        phrases.append((("make", "the", "next", "word", kind), _Action.FORMAT_NEXT_WORD, kind))
        phrases.append((("next", "word", kind), _Action.FORMAT_NEXT_WORD, kind))
        phrases.append(((kind, "next", "word"), _Action.FORMAT_NEXT_WORD, kind))
    return phrases


PHRASES = _build_phrases()


@dataclass(frozen=True)
class _Token:
    word: str
    trailing: str
    lower: str


@dataclass
class _Out:
    kind: str  # "word" | "punct" | "newline"
    text: str


def format_word(word: str, style: FormattingStyle, kind: PendingFormat) -> str:
    if kind == PendingFormat.NONE or style == FormattingStyle.PLAIN:
        return word
    if style == FormattingStyle.MARKDOWN:
        return f"**{word}**" if kind == PendingFormat.BOLD else f"*{word}*"
    return f"*{word}*" if kind == PendingFormat.BOLD else f"_{word}_"


def _tokenize(text: str) -> list[_Token]:
    tokens = []
    for raw in text.split():
        match = _TOKEN.match(raw)
        word = match.group(1) if match else raw
        trailing = (match.group(2) if match else None) or ""
        tokens.append(_Token(word=word, trailing=trailing, lower=word.lower()))
    return tokens


def _match_phrase(tokens: list[_Token], index: int) -> tuple[tuple[str, ...], _Action, str] | None:
    for phrase in PHRASES:
        words = phrase[0]
        if index + len(words) > len(tokens):
            continue
        if all(tokens[index + offset].lower == value for offset, value in enumerate(words)):
            return phrase
    return None


def _drop_trailing_punct(output: list[_Out]) -> None:
    while output and output[-1].kind == "punct":
        output.pop()


def _delete_last_word(output: list[_Out]) -> None:
    _drop_trailing_punct(output)
    for index in range(len(output) - 1, -1, -1):
        if output[index].kind == "word":
            del output[index]
            _drop_trailing_punct(output)
            return


def _delete_last_sentence(output: list[_Out]) -> None:
    _drop_trailing_punct(output)
    for index in range(len(output) - 1, -1, -1):
        token = output[index]
        if token.kind == "newline" or (
            token.kind == "punct" and any(ch in TERMINAL_PUNCTUATION for ch in token.text)
        ):
            del output[index:]
            return
    output.clear()


def _format_last_word(output: list[_Out], style: FormattingStyle, kind: PendingFormat) -> None:
    for token in reversed(output):
        if token.kind == "word":
            token.text = format_word(token.text, style, kind)
            return


def _render(output: list[_Out]) -> str:
    result = ""
    for token in output:
        if token.kind == "newline":
            result = result.rstrip() + "\n"
        elif token.kind == "punct":
            result = result.rstrip() + token.text + " "
        else:
            result += token.text + " "
    return result.strip()


def _clears_pending(punct: str) -> bool:
    return any(ch in TERMINAL_PUNCTUATION for ch in punct)


def apply_voice_commands(
    text: str,
    style: FormattingStyle = FormattingStyle.PLAIN,
    level: CommandLevel = CommandLevel.FULL,
) -> str:
    tokens = _tokenize(text)
    if not tokens:
        return text.strip()

    full = level == CommandLevel.FULL
    output: list[_Out] = []
    pending = PendingFormat.NONE
    i = 0
    while i < len(tokens):
        phrase = _match_phrase(tokens, i)
        if phrase is not None:
            words, action, arg = phrase
            skip = len(words)
            if action == _Action.NEWLINE:
                output.append(_Out("newline", "\n"))
                pending = PendingFormat.NONE
            elif action == _Action.PUNCT:
                output.append(_Out("punct", arg))
                if _clears_pending(arg):
                    pending = PendingFormat.NONE
            elif not full:
                # Command phrases are consumed without effect at punctuation level.
                pass
            elif action == _Action.DELETE_WORD:
                _delete_last_word(output)
            elif action == _Action.DELETE_SENTENCE:
                _delete_last_sentence(output)
            elif action == _Action.FORMAT_LAST_WORD:
                _format_last_word(output, style, PendingFormat(arg))
            elif action == _Action.FORMAT_NEXT_SENTENCE:
                pending = PendingFormat(arg)
            elif action == _Action.FORMAT_NEXT_WORD:
                target = i + skip
                if target < len(tokens) and tokens[target].word:
                    output.append(_Out("word", format_word(tokens[target].word, style, PendingFormat(arg))))
                    if tokens[target].trailing:
                        output.append(_Out("punct", tokens[target].trailing))
                    skip += 1
            i += skip
            continue

        token = tokens[i]
        if token.word:
            output.append(_Out("word", format_word(token.word, style, pending)))
        if token.trailing:
            output.append(_Out("punct", token.trailing))
            if _clears_pending(token.trailing):
                pending = PendingFormat.NONE
        i += 1

    return _render(output)
