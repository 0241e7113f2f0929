"""
Inference session: the single owner of a loaded model, its context, the
reusable decode batch and the sampler chain.

Lifecycle::

    session = InferenceSession.init(model_path)   # load model + context
    session.prepare_prompt(prompt)                # clear cache, prime prompt
    while (piece := session.get_next_token(0.2, 0.9)) is not None:
        ...
    session.free()                                # release everything, poison handle

The session is not thread-safe. Exactly one caller (the controller's worker
thread) may use it, and it must be discarded after ``free``.
"""

import codecs
import logging
from typing import List, Optional

from tokenstream_lite.batch.batch import Batch
from tokenstream_lite.batch.chunk_manager import SEQ_ID, ChunkManager
from tokenstream_lite.config import SessionConfig
from tokenstream_lite.errors import (
    ContextError,
    DecodeError,
    NotInitializedError,
    NotPreparedError,
    PromptTooLongError,
    TokenStreamError,
)
from tokenstream_lite.runtime.base import ContextParams, ModelRuntime, RuntimeContext, RuntimeModel
from tokenstream_lite.runtime.transformers_runtime import TransformersRuntime
from tokenstream_lite.sampling.sampler_chain import SamplerChainManager


# Literal text that means the model started a new turn on its own
TURN_BOUNDARY_MARKERS = ("<|im_end|", "<|im_start|>", "<|user|>", "user\n")


class InferenceSession:
    """Checked single-owner wrapper around a runtime model and context.

    Use :meth:`init` to construct. After :meth:`free` every method raises
    NotInitializedError; the session cannot be copied or pickled.

    Attributes:
        model_path: Path the model was loaded from
        config: Effective session configuration
    """

    def __init__(
        self,
        model_path: str,
        model: RuntimeModel,
        context: RuntimeContext,
        config: SessionConfig,
        sampler: Optional[SamplerChainManager] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.model_path = model_path
        self.config = config
        self.log = logger or logging.getLogger(__name__)

        self._model: Optional[RuntimeModel] = model
        self._ctx: Optional[RuntimeContext] = context
        self._batch: Optional[Batch] = Batch(min(config.batch_capacity, context.n_batch))
        self._sampler: Optional[SamplerChainManager] = sampler or SamplerChainManager()
        self._chunks = ChunkManager(self._batch.capacity)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        self._cursor = 0
        self._prepared = False
        self._n_prompt = 0
        self._n_generated = 0
        self._max_new_tokens = 0
        self._freed = False

    @classmethod
    def init(
        cls,
        model_path: str,
        context_size: int = 1024,
        thread_count: int = 4,
        use_mmap: bool = True,
        runtime: Optional[ModelRuntime] = None,
        config: Optional[SessionConfig] = None,
        sampler: Optional[SamplerChainManager] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "InferenceSession":
        """Load a model and build a CPU-only context for it.

        Non-positive ``context_size`` / ``thread_count`` fall back to 1024 / 4.
        An explicit ``config`` takes precedence over those three arguments.

        Args:
            model_path: Local path of the model
            context_size: Context window in tokens
            thread_count: CPU threads for decode
            use_mmap: Allow memory-mapping the weights
            runtime: Model runtime (defaults to TransformersRuntime)
            config: Full session configuration
            sampler: Sampler chain manager to own (a default one is created otherwise)
            logger: Logger to use instead of the module logger

        Returns:
            A ready (not yet prepared) session

        Raises:
            LoadError: If the model cannot be loaded
            ContextError: If the context cannot be created (the model is released first)
        """
        log = logger or logging.getLogger(__name__)
        if config is None:
            config = SessionConfig(
                context_size=context_size, thread_count=thread_count, use_mmap=use_mmap
            )
        runtime = runtime or TransformersRuntime()

        log.info(
            "init: model=%s, ctx=%d, threads=%d, runtime=%s",
            model_path, config.context_size, config.thread_count, runtime.name,
        )
        model = runtime.load_model(model_path, config.use_mmap)

        params = ContextParams(
            n_ctx=config.context_size,
            n_threads=config.thread_count,
            n_threads_batch=config.thread_count,
            n_batch=config.n_batch,
            n_ubatch=config.n_ubatch,
            offload_kqv=False,
            no_perf=True,
        )
        try:
            context = model.new_context(params)
        except ContextError:
            log.error("init: failed to create context, releasing model")
            model.close()
            raise

        session = cls(model_path, model, context, config, sampler=sampler, logger=log)
        log.info("init: success (batch capacity %d)", session.batch_capacity)
        return session

    # Introspection

    @property
    def is_freed(self) -> bool:
        return self._freed

    @property
    def is_prepared(self) -> bool:
        return self._prepared

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def n_prompt(self) -> int:
        return self._n_prompt

    @property
    def n_generated(self) -> int:
        return self._n_generated

    @property
    def max_new_tokens(self) -> int:
        return self._max_new_tokens

    @property
    def n_ctx(self) -> int:
        self._check_alive()
        return self._ctx.n_ctx

    @property
    def batch_capacity(self) -> int:
        self._check_alive()
        return self._batch.capacity

    @property
    def sampler(self) -> SamplerChainManager:
        self._check_alive()
        return self._sampler

    def _check_alive(self) -> None:
        if self._freed:
            raise NotInitializedError("InferenceSession was freed and must not be reused")

    # Tokenization

    def _tokenize(self, text: str, n_max_tokens: int, add_special: bool, parse_special: bool) -> List[int]:
        n, ids = self._model.tokenize(text, n_max_tokens, add_special, parse_special)
        if n < 0:
            # Buffer was too small; -n is the exact size needed
            n, ids = self._model.tokenize(text, -n, add_special, parse_special)
            if n < 0:
                raise TokenStreamError(f"Failed to tokenize text (n_tokens={n})")
        return ids[:n]

    def tokenize(self, text: str) -> int:
        """Count the tokens of ``text`` without touching the context.

        Used for prompt budgeting only: no BOS and control-token text is
        counted as plain text.
        """
        self._check_alive()
        return len(self._tokenize(text, len(text.encode("utf-8")) + 4, False, False))

    # Prompt priming

    def prepare_prompt(self, prompt: str) -> None:
        """Clear the attention cache and prime it with ``prompt``.

        Raises:
            PromptTooLongError: If the prompt leaves less than the safety margin
            DecodeError: If a chunk fails to decode; the session stays unprepared
            NotInitializedError: If the session was freed
        """
        self._check_alive()
        self._prepared = False

        self.log.info("prepare_prompt: clearing attention cache")
        self._ctx.memory_clear()

        tokens = self._tokenize(prompt, len(prompt.encode("utf-8")) + 1, True, True)
        n_tokens = len(tokens)
        self.log.info(
            "prepare_prompt: n_tokens=%d in %d chunks",
            n_tokens,
            self._chunks.calculate_chunks_needed(n_tokens),
        )

        n_ctx = self._ctx.n_ctx
        limit = n_ctx - self.config.safety_margin
        if n_tokens >= limit:
            self.log.error(
                "prepare_prompt: prompt too long (%d >= %d - %d)",
                n_tokens, n_ctx, self.config.safety_margin,
            )
            raise PromptTooLongError(n_tokens, limit)
        if n_tokens == 0:
            raise DecodeError("prepare_prompt: prompt produced no tokens", code=-1, position=0)

        self._cursor = 0
        for batch in self._chunks.iter_batches(self._batch, tokens, start_pos=0):
            self.log.debug(
                "prepare_prompt: decoding chunk at %d/%d (%d tokens)",
                self._cursor, n_tokens, batch.n_tokens,
            )
            status = self._ctx.decode(batch)
            if status != 0:
                self.log.error("prepare_prompt: decode failed at %d with code %d", self._cursor, status)
                raise DecodeError(
                    f"Prompt decode failed at position {self._cursor} (code {status})",
                    code=status,
                    position=self._cursor,
                )
            self._cursor += batch.n_tokens

        self._n_prompt = self._cursor
        self._n_generated = 0
        self._max_new_tokens = max(
            self.config.min_new_tokens, n_ctx - self._n_prompt - self.config.safety_margin
        )
        self._sampler.reset()
        self._decoder.reset()
        self._prepared = True
        self.log.info("prepare_prompt: success (max_new_tokens=%d)", self._max_new_tokens)

    # Generation

    def get_next_token(self, temperature: float, top_p: float) -> Optional[str]:
        """Sample, render and decode one token.

        Args:
            temperature: Sampling temperature (<= 0 means greedy)
            top_p: Nucleus mass

        Returns:
            The decoded text of the token (may be ``""`` while a multi-byte
            character is incomplete), or ``None`` at end of generation

        Raises:
            NotPreparedError: If no prompt was prepared
            SamplerError: If the sampler chain cannot be built
            DecodeError: If decoding the sampled token fails
            NotInitializedError: If the session was freed
        """
        piece = self.next_piece(temperature, top_p)
        if piece is None:
            return None
        return self._decoder.decode(piece)

    def next_piece(self, temperature: float, top_p: float) -> Optional[bytes]:
        """Sample and render one token as raw bytes.

        A piece may hold part of a multi-byte character. Callers that want
        text should use :meth:`get_next_token`.
        """
        self._check_alive()
        if not self._prepared:
            raise NotPreparedError("get_next_token called before prepare_prompt")

        chain = self._sampler.ensure(temperature, top_p)

        n_ctx = self._ctx.n_ctx
        if self._cursor >= n_ctx - self.config.context_guard:
            self.log.info(
                "get_next_token: context full (cursor=%d n_ctx=%d), stopping", self._cursor, n_ctx
            )
            return None
        if self._n_generated >= self._max_new_tokens:
            self.log.info("get_next_token: max_new_tokens reached")
            return None

        token_id = chain.sample(self._ctx.get_logits_ith(-1))
        piece = self._model.token_to_piece(token_id, True)

        rendered = piece.decode("utf-8", errors="replace")
        if any(marker in rendered for marker in TURN_BOUNDARY_MARKERS):
            self.log.info("get_next_token: turn boundary detected in piece")
            return None
        if self._model.is_eog(token_id):
            self.log.info("get_next_token: end of generation token %d", token_id)
            return None

        self._batch.reset()
        self._batch.add(token_id, self._cursor, SEQ_ID, logits=True)
        status = self._ctx.decode(self._batch)
        if status != 0:
            self.log.error("get_next_token: decode failed with code %d", status)
            raise DecodeError(
                f"Token decode failed at position {self._cursor} (code {status})",
                code=status,
                position=self._cursor,
            )

        self._cursor += 1
        self._n_generated += 1
        return piece

    # Teardown

    def free(self) -> None:
        """Release sampler, batch, context and model, in that order.

        A second call is a no-op.
        """
        if self._freed:
            return
        self.log.info("free: releasing resources for %s", self.model_path)
        self._freed = True
        self._prepared = False

        if self._sampler is not None:
            self._sampler.free()
            self._sampler = None
        if self._batch is not None:
            self._batch.close()
            self._batch = None
        if self._ctx is not None:
            self._ctx.close()
            self._ctx = None
        if self._model is not None:
            self._model.close()
            self._model = None

    def __enter__(self) -> "InferenceSession":
        self._check_alive()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.free()

    def __copy__(self):
        raise TypeError("InferenceSession owns native resources and cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("InferenceSession owns native resources and cannot be copied")

    def __reduce__(self):
        raise TypeError("InferenceSession owns native resources and cannot be pickled")

    def __repr__(self) -> str:
        state = "freed" if self._freed else ("prepared" if self._prepared else "ready")
        return f"InferenceSession(model_path={self.model_path!r}, state={state}, cursor={self._cursor})"
