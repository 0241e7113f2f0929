"""
Model runtime backed by HuggingFace transformers on CPU.

A model directory (config, weights, tokenizer files) is loaded with
AutoModelForCausalLM / AutoTokenizer. The context keeps a DynamicCache as
the attention cache and decodes batches with explicit position ids, keeping
only the rows whose logits flag is set.
"""

import json
import logging
import os
import re
from typing import Dict, List, Optional, Set, Tuple

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, DynamicCache
from transformers.convert_slow_tokenizer import bytes_to_unicode

from tokenstream_lite.batch.batch import Batch
from tokenstream_lite.errors import ContextError, LoadError
from tokenstream_lite.runtime.base import (
    ContextParams,
    ModelRuntime,
    RuntimeContext,
    RuntimeModel,
)

logger = logging.getLogger(__name__)

# Status codes returned by TransformersContext.decode
DECODE_OK = 0
DECODE_NO_SPACE = 1
DECODE_INVALID_BATCH = -1
DECODE_FAILED = -3

# Control tokens that end a turn in common chat vocabularies
_EOG_TOKEN_TEXTS = ("<|im_end|>", "<|endoftext|>", "<|eot_id|>", "<|end|>", "</s>")

# SentencePiece byte-fallback token, e.g. <0xE4>
_BYTE_FALLBACK = re.compile(r"<0x([0-9A-Fa-f]{2})>")
_SPIECE_SPACE = "\u2581"


class TransformersContext(RuntimeContext):
    """Attention cache and logits for one TransformersModel.

    Args:
        model: The causal LM
        params: Context parameters
    """

    def __init__(self, model: AutoModelForCausalLM, params: ContextParams):
        self.model = model
        self.params = params
        self.cache: Optional[DynamicCache] = DynamicCache()
        self.n_past = 0
        self._logits: Optional[torch.Tensor] = None

    @property
    def n_ctx(self) -> int:
        return self.params.n_ctx

    @property
    def n_batch(self) -> int:
        return self.params.n_batch

    @property
    def n_ubatch(self) -> int:
        return self.params.n_ubatch

    def memory_clear(self) -> None:
        self.cache = DynamicCache()
        self.n_past = 0
        self._logits = None

    def decode(self, batch: Batch) -> int:
        n_tokens = batch.n_tokens
        if n_tokens == 0 or n_tokens > self.n_batch:
            logger.error("decode: invalid batch size %d (n_batch=%d)", n_tokens, self.n_batch)
            return DECODE_INVALID_BATCH

        positions = batch.positions()
        first_pos = int(positions[0])
        if first_pos != self.n_past:
            logger.error("decode: batch starts at %d but cache holds %d positions", first_pos, self.n_past)
            return DECODE_INVALID_BATCH
        if first_pos + n_tokens > self.n_ctx:
            logger.error("decode: no space left in context (%d + %d > %d)", first_pos, n_tokens, self.n_ctx)
            return DECODE_NO_SPACE

        token_ids = batch.token_ids()
        mask = batch.logits_mask()
        kept: List[torch.Tensor] = []

        try:
            with torch.no_grad():
                # Split into physical micro-batches; positions stay contiguous
                for start in range(0, n_tokens, self.n_ubatch):
                    end = min(start + self.n_ubatch, n_tokens)
                    out = self.model(
                        input_ids=token_ids[start:end].unsqueeze(0),
                        position_ids=positions[start:end].unsqueeze(0),
                        past_key_values=self.cache,
                        use_cache=True,
                    )
                    self.cache = out.past_key_values
                    rows = mask[start:end]
                    if rows.any():
                        kept.append(out.logits[0][rows].float())
        except (RuntimeError, ValueError, IndexError) as e:
            logger.error("decode: model forward failed: %s", e)
            return DECODE_FAILED

        self.n_past = first_pos + n_tokens
        self._logits = torch.cat(kept, dim=0) if kept else None
        return DECODE_OK

    def get_logits_ith(self, i: int) -> torch.Tensor:
        if self._logits is None:
            raise RuntimeError("No logits available: last decode requested none")
        return self._logits[i]

    def close(self) -> None:
        self.cache = None
        self._logits = None
        self.model = None


class TransformersModel(RuntimeModel):
    """Causal LM plus tokenizer loaded from a local directory.

    Pieces are rendered as the raw bytes a token stands for, so a character
    split over several tokens is only reassembled by the caller. Byte-level
    BPE vocabularies map each symbol back through the GPT-2 byte alphabet;
    SentencePiece vocabularies map ``<0xNN>`` to its byte and the word
    boundary mark to a space. Added and special tokens render as their text.
    """

    def __init__(self, model_path: str, model: AutoModelForCausalLM, tokenizer: AutoTokenizer):
        self.model_path = model_path
        self.model = model
        self.tokenizer = tokenizer
        self._eog_ids = self._collect_eog_ids()
        self._added: Dict[int, Tuple[str, bool]] = {
            int(tid): (str(getattr(tok, "content", tok)), bool(getattr(tok, "special", True)))
            for tid, tok in getattr(tokenizer, "added_tokens_decoder", {}).items()
        }
        self._special_ids: Set[int] = set(getattr(tokenizer, "all_special_ids", []))
        self._byte_decoder: Optional[Dict[str, int]] = None
        if self._is_byte_level():
            self._byte_decoder = {symbol: byte for byte, symbol in bytes_to_unicode().items()}

    def _collect_eog_ids(self) -> Set[int]:
        ids: Set[int] = set()
        for source in (self.model.generation_config, self.model.config, self.tokenizer):
            eos = getattr(source, "eos_token_id", None)
            if isinstance(eos, int):
                ids.add(eos)
            elif isinstance(eos, (list, tuple)):
                ids.update(int(t) for t in eos)

        vocab = self.tokenizer.get_vocab()
        for text in _EOG_TOKEN_TEXTS:
            if text in vocab:
                ids.add(vocab[text])
        return ids

    @property
    def n_vocab(self) -> int:
        return int(self.model.config.vocab_size)

    @property
    def n_ctx_train(self) -> Optional[int]:
        return getattr(self.model.config, "max_position_embeddings", None)

    def tokenize(
        self, text: str, n_max_tokens: int, add_special: bool, parse_special: bool
    ) -> Tuple[int, List[int]]:
        ids = self.tokenizer.encode(
            text,
            add_special_tokens=add_special,
            split_special_tokens=not parse_special,
        )
        if len(ids) > n_max_tokens:
            return -len(ids), []
        return len(ids), list(ids)

    def _is_byte_level(self) -> bool:
        backend = getattr(self.tokenizer, "backend_tokenizer", None)
        if backend is None:
            return False
        decoder = json.loads(backend.to_str()).get("decoder")
        return "\"ByteLevel\"" in json.dumps(decoder)

    def token_to_piece(self, token_id: int, special: bool) -> bytes:
        """Raw bytes of ``token_id``; special tokens are empty unless ``special``."""
        if token_id in self._added or token_id in self._special_ids:
            text, is_special = self._added.get(
                token_id, (self.tokenizer.convert_ids_to_tokens(token_id), True)
            )
            if is_special and not special:
                return b""
            return text.encode("utf-8")

        token = self.tokenizer.convert_ids_to_tokens(token_id)
        if token is None:
            return b""
        match = _BYTE_FALLBACK.fullmatch(token)
        if match is not None:
            return bytes([int(match.group(1), 16)])
        if self._byte_decoder is not None and all(c in self._byte_decoder for c in token):
            return bytes(self._byte_decoder[c] for c in token)
        return token.replace(_SPIECE_SPACE, " ").encode("utf-8")

    def is_eog(self, token_id: int) -> bool:
        return token_id in self._eog_ids

    def new_context(self, params: ContextParams) -> RuntimeContext:
        n_ctx_train = self.n_ctx_train
        if n_ctx_train is not None and params.n_ctx > n_ctx_train:
            raise ContextError(
                f"Requested context of {params.n_ctx} tokens exceeds the model's "
                f"trained window of {n_ctx_train}"
            )
        if params.offload_kqv:
            raise ContextError("Only CPU contexts are supported")

        torch.set_num_threads(params.n_threads)
        return TransformersContext(self.model, params)

    def close(self) -> None:
        self.model = None
        self.tokenizer = None


class TransformersRuntime(ModelRuntime):
    """Loads local model directories with HuggingFace transformers."""

    @property
    def name(self) -> str:
        return "transformers"

    def load_model(self, model_path: str, use_mmap: bool) -> RuntimeModel:
        if not os.path.exists(model_path):
            raise LoadError(f"Model path does not exist: {model_path}")

        try:
            tokenizer = AutoTokenizer.from_pretrained(model_path, use_fast=True)
            model = AutoModelForCausalLM.from_pretrained(
                model_path,
                torch_dtype=torch.float32,
                low_cpu_mem_usage=use_mmap,
            )
        except (OSError, ValueError, RuntimeError) as e:
            raise LoadError(f"Failed to load model at {model_path}: {e}") from e

        model.to("cpu")
        model.eval()
        return TransformersModel(model_path, model, tokenizer)
