"""
Tokenization and detokenization.

The tokenizer travels inside the model container as a serialized
HuggingFace ``tokenizers`` definition and is wrapped in a
PreTrainedTokenizerFast for the familiar encode/decode API.
"""

import logging
from typing import List, Optional, Sequence

from tokenizers import Tokenizer
from transformers import PreTrainedTokenizerFast

logger = logging.getLogger(__name__)

# Placeholder replaced by the user prompt in a model prompt template
PROMPT_PLACEHOLDER = "{prompt}"

# Decoded text ending in this character is an incomplete multi-byte sequence
_REPLACEMENT_CHAR = "\ufffd"


class TokenizerManager:
    """Encodes prompts and decodes generated tokens for one model.

    Attributes:
        tokenizer: The wrapped PreTrainedTokenizerFast.
        eos_token_id: End-of-sequence token id.
        prompt_template: Optional template containing ``{prompt}``.
    """

    def __init__(
        self,
        tokenizer: PreTrainedTokenizerFast,
        eos_token_id: int,
        prompt_template: Optional[str] = None,
    ) -> None:
        self.tokenizer = tokenizer
        self.eos_token_id = eos_token_id
        self.prompt_template = prompt_template

    @classmethod
    def from_serialized(
        cls,
        tokenizer_json: str,
        eos_token_id: int,
        prompt_template: Optional[str] = None,
    ) -> "TokenizerManager":
        """Build a manager from a serialized ``tokenizers`` definition.

        Raises:
            ValueError: If the definition cannot be parsed or the EOS id is
                not part of the vocabulary.
        """
        try:
            backend = Tokenizer.from_str(tokenizer_json)
        except Exception as exc:
            raise ValueError(f"tokenizer definition could not be parsed: {exc}") from exc

        eos_token = backend.id_to_token(eos_token_id)
        if eos_token is None:
            raise ValueError(f"eos_token_id {eos_token_id} is not in the tokenizer vocabulary")

        if prompt_template is not None and PROMPT_PLACEHOLDER not in prompt_template:
            raise ValueError(f"prompt template must contain '{PROMPT_PLACEHOLDER}'")

        tokenizer = PreTrainedTokenizerFast(
            tokenizer_object=backend,
            eos_token=eos_token,
            clean_up_tokenization_spaces=False,
        )
        return cls(tokenizer, eos_token_id, prompt_template)

    @property
    def vocab_size(self) -> int:
        return len(self.tokenizer)

    def apply_template(self, prompt: str) -> str:
        """Wrap the prompt in the model's template, if it declares one."""
        if not self.prompt_template:
            return prompt
        return self.prompt_template.replace(PROMPT_PLACEHOLDER, prompt)

    def encode(self, text: str) -> List[int]:
        """Tokenize text without adding special tokens."""
        if text is None:
            raise TypeError("text cannot be None")
        return self.tokenizer.encode(text, add_special_tokens=False)

    def decode(self, token_ids: Sequence[int]) -> str:
        """Detokenize ids, skipping special tokens."""
        return self.tokenizer.decode(
            list(token_ids),
            skip_special_tokens=True,
            clean_up_tokenization_spaces=False,
        )

    def incremental_decoder(self) -> "IncrementalDecoder":
        return IncrementalDecoder(self)


class IncrementalDecoder:
    """Turns a stream of token ids into a stream of complete text.

    Text is re-decoded from the full id sequence on every push, so tokens
    that only form a character together (byte-level pieces of a multi-byte
    character) are held back until the character is complete.
    """

    def __init__(self, manager: TokenizerManager) -> None:
        self._manager = manager
        self.token_ids: List[int] = []
        self.text = ""

    def push(self, token_id: int) -> str:
        """Add a token and return the newly completed text (possibly empty)."""
        self.token_ids.append(token_id)
        decoded = self._manager.decode(self.token_ids)
        if decoded.endswith(_REPLACEMENT_CHAR):
            return ""
        return self._advance(decoded)

    def flush(self) -> str:
        """Return whatever text remains, including incomplete characters."""
        return self._advance(self._manager.decode(self.token_ids))

    def _advance(self, decoded: str) -> str:
        if not decoded.startswith(self.text):
            # Earlier text re-tokenized differently; never retract emitted text
            logger.debug("Decoded text diverged from emitted prefix; continuing from offset")
        new_text = decoded[len(self.text):]
        self.text = decoded
        return new_text
