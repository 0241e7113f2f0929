"""Tests for the transformers-backed runtime using a tiny randomly initialized model."""

import codecs

import pytest
import torch
from tokenizers import Tokenizer, decoders, models, pre_tokenizers, trainers
from transformers import LlamaConfig, LlamaForCausalLM, PreTrainedTokenizerFast

from tokenstream_lite.batch.batch import Batch
from tokenstream_lite.batch.chunk_manager import ChunkManager
from tokenstream_lite.errors import ContextError, LoadError
from tokenstream_lite.runtime.base import ContextParams
from tokenstream_lite.runtime.transformers_runtime import (
    DECODE_INVALID_BATCH,
    DECODE_NO_SPACE,
    DECODE_OK,
    TransformersContext,
    TransformersModel,
    TransformersRuntime,
)


class StubTokenizer:
    """Just enough tokenizer surface for end-of-generation discovery."""

    eos_token_id = 2

    def get_vocab(self):
        return {"<|im_end|>": 5}


@pytest.fixture(scope="module")
def tiny_model():
    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=64,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=4,
        max_position_embeddings=256,
    )
    model = LlamaForCausalLM(config)
    model.eval()
    return model


@pytest.fixture(scope="module")
def byte_level_tokenizer():
    """GPT-2 style byte-level BPE trained offline on a tiny corpus.

    The corpus is mostly ASCII, so the few merges never join the bytes of
    a non-ASCII character and each of those bytes is its own token.
    """
    backend = Tokenizer(models.BPE())
    backend.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    backend.decoder = decoders.ByteLevel()
    trainer = trainers.BpeTrainer(
        vocab_size=262,
        initial_alphabet=pre_tokenizers.ByteLevel.alphabet(),
        special_tokens=["<|im_end|>"],
        show_progress=False,
    )
    backend.train_from_iterator(["hello world"] * 20 + ["h\u00e9llo \u4e16\u754c"], trainer=trainer)
    return PreTrainedTokenizerFast(tokenizer_object=backend, eos_token="<|im_end|>")


@pytest.fixture(scope="module")
def byte_fallback_tokenizer():
    """SentencePiece style vocabulary with <0xNN> byte tokens."""
    vocab = {"<unk>": 0, "\u2581hi": 1, "caf": 2, "<0xC3>": 3, "<0xA9>": 4}
    backend = Tokenizer(models.BPE(vocab=vocab, merges=[], unk_token="<unk>", byte_fallback=True))
    backend.decoder = decoders.Sequence(
        [decoders.Replace("\u2581", " "), decoders.ByteFallback(), decoders.Fuse()]
    )
    return PreTrainedTokenizerFast(tokenizer_object=backend, unk_token="<unk>")


def make_params(n_ctx=256, n_batch=128, n_ubatch=64):
    return ContextParams(n_ctx=n_ctx, n_threads=1, n_threads_batch=1, n_batch=n_batch, n_ubatch=n_ubatch)


def prime(context, tokens, capacity=128):
    manager = ChunkManager(capacity)
    for batch in manager.iter_batches(Batch(capacity), tokens):
        assert context.decode(batch) == DECODE_OK


@pytest.mark.unit
class TestTransformersContext:
    def test_chunked_decode_matches_single_forward(self, tiny_model):
        tokens = [int(t) for t in torch.randint(0, 64, (150,))]

        context = TransformersContext(tiny_model, make_params())
        prime(context, tokens)
        assert context.n_past == 150

        with torch.no_grad():
            reference = tiny_model(input_ids=torch.tensor([tokens])).logits[0, -1]
        assert torch.allclose(context.get_logits_ith(-1), reference, atol=1e-4)

    def test_generation_step_extends_cache(self, tiny_model):
        context = TransformersContext(tiny_model, make_params())
        prime(context, [1, 2, 3])

        batch = Batch(1)
        batch.add(4, 3, 0, logits=True)
        assert context.decode(batch) == DECODE_OK
        assert context.n_past == 4

        with torch.no_grad():
            reference = tiny_model(input_ids=torch.tensor([[1, 2, 3, 4]])).logits[0, -1]
        assert torch.allclose(context.get_logits_ith(-1), reference, atol=1e-4)

    def test_position_gap_rejected(self, tiny_model):
        context = TransformersContext(tiny_model, make_params())
        batch = Batch(1)
        batch.add(1, 5, 0, logits=True)
        assert context.decode(batch) == DECODE_INVALID_BATCH

    def test_no_space(self, tiny_model):
        context = TransformersContext(tiny_model, make_params(n_ctx=8, n_batch=8, n_ubatch=8))
        batch = Batch(16)
        for i in range(9):
            batch.add(1, i)
        assert context.decode(batch) == DECODE_INVALID_BATCH

        batch = Batch(8)
        for i in range(8):
            batch.add(1, i, logits=(i == 7))
        assert context.decode(batch) == DECODE_OK
        step = Batch(1)
        step.add(1, 8, logits=True)
        assert context.decode(step) == DECODE_NO_SPACE

    def test_no_logits_requested(self, tiny_model):
        context = TransformersContext(tiny_model, make_params())
        batch = Batch(2)
        batch.add(1, 0)
        batch.add(2, 1)
        assert context.decode(batch) == DECODE_OK
        with pytest.raises(RuntimeError, match="No logits"):
            context.get_logits_ith(-1)

    def test_memory_clear(self, tiny_model):
        context = TransformersContext(tiny_model, make_params())
        prime(context, [1, 2, 3])
        context.memory_clear()
        assert context.n_past == 0
        prime(context, [7, 8])
        assert context.n_past == 2


@pytest.mark.unit
class TestTransformersModel:
    def test_end_of_generation_ids(self, tiny_model):
        model = TransformersModel("tiny", tiny_model, StubTokenizer())
        assert model.is_eog(2)
        assert model.is_eog(5)
        assert not model.is_eog(9)
        assert model.n_vocab == 64

    def test_context_larger_than_trained_window(self, tiny_model):
        model = TransformersModel("tiny", tiny_model, StubTokenizer())
        with pytest.raises(ContextError, match="trained window"):
            model.new_context(make_params(n_ctx=1024))

    def test_gpu_offload_rejected(self, tiny_model):
        model = TransformersModel("tiny", tiny_model, StubTokenizer())
        params = make_params()
        params.offload_kqv = True
        with pytest.raises(ContextError, match="CPU"):
            model.new_context(params)


@pytest.mark.unit
class TestTransformersRuntime:
    def test_missing_model_path(self, tmp_path):
        with pytest.raises(LoadError, match="does not exist"):
            TransformersRuntime().load_model(str(tmp_path / "missing"), use_mmap=True)

    def test_unloadable_directory(self, tmp_path):
        with pytest.raises(LoadError):
            TransformersRuntime().load_model(str(tmp_path), use_mmap=True)


@pytest.mark.unit
class TestTokenPieces:
    TEXT = "héllo 世界"

    def test_tokenize_size_hint(self, tiny_model, byte_level_tokenizer):
        model = TransformersModel("tiny", tiny_model, byte_level_tokenizer)
        n, ids = model.tokenize(self.TEXT, 256, False, True)
        assert n == len(ids) > 2

        hint, short = model.tokenize(self.TEXT, 2, False, True)
        assert hint == -n
        assert short == []

    def test_pieces_are_raw_bytes(self, tiny_model, byte_level_tokenizer):
        model = TransformersModel("tiny", tiny_model, byte_level_tokenizer)
        _, ids = model.tokenize(self.TEXT, 256, False, True)
        pieces = [model.token_to_piece(t, True) for t in ids]

        assert b"".join(pieces) == self.TEXT.encode("utf-8")
        assert b"\xe4" in pieces

    def test_split_characters_reassemble(self, tiny_model, byte_level_tokenizer):
        model = TransformersModel("tiny", tiny_model, byte_level_tokenizer)
        _, ids = model.tokenize(self.TEXT, 256, False, True)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        text = "".join(decoder.decode(model.token_to_piece(t, True)) for t in ids)
        assert text == self.TEXT
        assert "\ufffd" not in text

    def test_special_token_rendering(self, tiny_model, byte_level_tokenizer):
        model = TransformersModel("tiny", tiny_model, byte_level_tokenizer)
        eos = byte_level_tokenizer.eos_token_id
        assert model.is_eog(eos)
        assert model.token_to_piece(eos, True) == b"<|im_end|>"
        assert model.token_to_piece(eos, False) == b""

    def test_control_text_split_when_not_parsed(self, tiny_model, byte_level_tokenizer):
        model = TransformersModel("tiny", tiny_model, byte_level_tokenizer)
        eos = byte_level_tokenizer.eos_token_id
        _, parsed = model.tokenize("hi<|im_end|>", 256, False, True)
        _, literal = model.tokenize("hi<|im_end|>", 256, False, False)
        assert eos in parsed
        assert eos not in literal

    def test_byte_fallback_pieces(self, tiny_model, byte_fallback_tokenizer):
        model = TransformersModel("tiny", tiny_model, byte_fallback_tokenizer)
        assert model.token_to_piece(1, True) == b" hi"
        assert model.token_to_piece(3, True) == b"\xc3"

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        text = "".join(decoder.decode(model.token_to_piece(t, True)) for t in (2, 3, 4, 1))
        assert text == "café hi"
