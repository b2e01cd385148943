"""
Token counting for context budget enforcement.

OpenAI models are measured with tiktoken (Rust-based BPE tokenizer), using the
model's own encoding. Local backends (Ollama, LM Studio) serve models whose
tokenizers are not available locally, so they are measured with a word-level
approximation:

    - word characters cost one token per 4, rounded up over the whole text
    - every other non-space character costs one token

The approximation is deterministic and monotonic: inserting text anywhere never
lowers the count, including text that joins two words into one. Prose lands
near the usual four-characters-per-token rule; punctuation-heavy text such as
code counts high, which leaves more room for output.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Callable

import tiktoken

from promptbox.llm.provider_config import OPENAI

logger = logging.getLogger(__name__)

Tokenizer = Callable[[str], int]

CHARS_PER_WORD_TOKEN = 4
FALLBACK_ENCODING = "cl100k_base"

_WORD_OR_SYMBOL = re.compile(r"(\w+)|[^\w\s]")

# Encoders keyed by model name, loaded once per process.
_encoders: dict[str, tiktoken.Encoding] = {}


def approximate_tokens(text: str) -> int:
    """Word-level token estimate used for local backends."""
    if not text:
        return 0

    word_chars = 0
    symbols = 0
    for match in _WORD_OR_SYMBOL.finditer(text):
        word = match.group(1)
        if word:
            word_chars += len(word)
        else:
            symbols += 1
    return math.ceil(word_chars / CHARS_PER_WORD_TOKEN) + symbols


def _get_encoder(model: str) -> tiktoken.Encoding:
    encoder = _encoders.get(model)
    if encoder is not None:
        return encoder

    try:
        encoder = tiktoken.encoding_for_model(model)
    except KeyError:
        logger.info("tiktoken has no encoding for %s; using %s", model, FALLBACK_ENCODING)
        encoder = tiktoken.get_encoding(FALLBACK_ENCODING)

    _encoders[model] = encoder
    return encoder


def tokenizer_for(provider: str, model: str) -> Tokenizer:
    """
    Return the token counter matching a backend's tokenization.

    Args:
        provider: Provider identifier from `ModelOptions.provider`.
        model: Wire model name.

    Returns:
        Callable mapping text to a token count.
    """
    if provider == OPENAI:
        encoder = _get_encoder(model)
        return lambda text: len(encoder.encode(text, disallowed_special=()))

    return approximate_tokens
