"""
Public entry point.

A Bridge loads one model, keeps one warmed inference context for it, and
exposes the operations an application needs: warm-up, image embedding
ingestion and text generation. Construction never raises for load failures;
the bridge records the error and every later operation reports
ModelNotLoadedError until a new bridge is built.

Operations on the context are serialized by a per-bridge lock. Callers
queue by default; with ``queue_timeout`` set, a caller that cannot get the
context in time receives ContextBusyError.
"""

import logging
import threading
from typing import Any, Optional, Sequence, Union

import torch

from vlm_bridge.config import BridgeConfig, get_config
from vlm_bridge.core.context import InferenceContext
from vlm_bridge.core.generation import GenerationEngine, GenerationStream, acquire_lock
from vlm_bridge.core.injector import EmbeddingInjector, copy_buffer
from vlm_bridge.core.model_store import ModelHandle, ModelStore
from vlm_bridge.core.request import GenerationRequest, GenerationResult, GenerationState
from vlm_bridge.errors import ModelLoadError, ModelNotLoadedError

logger = logging.getLogger(__name__)


class Bridge:
    """On-device multimodal inference bridge.

    Args:
        model_path: Path to the model container.
        config: Runtime configuration. Defaults to the process configuration.
        store: ModelStore to load through, so several bridges can share a
            loaded model. Defaults to a private store.

    Attributes:
        load_error: The ModelLoadError raised by the last load, if it failed.
    """

    def __init__(
        self,
        model_path: str,
        config: Optional[BridgeConfig] = None,
        store: Optional[ModelStore] = None,
    ):
        self.model_path = model_path
        self.config = config or get_config()
        self.store = store or ModelStore(self.config)
        self._owns_store = store is None
        self.load_error: Optional[ModelLoadError] = None

        self._handle: Optional[ModelHandle] = None
        self._context: Optional[InferenceContext] = None
        self._lock = threading.Lock()
        self._engine = GenerationEngine(self.config)
        self._injector = EmbeddingInjector()
        self._last_embedding: Optional[torch.Tensor] = None

        if self.config.num_threads is not None:
            torch.set_num_threads(self.config.num_threads)

        try:
            self._handle = self.store.load(model_path)
        except ModelLoadError as exc:
            self.load_error = exc
            logger.error("Failed to load model %s: [%s] %s", model_path, exc.kind, exc)
            return

        self._context = InferenceContext(self._handle, self.config)

    def __enter__(self) -> "Bridge":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    @property
    def handle(self) -> ModelHandle:
        self._require_loaded()
        return self._handle

    @property
    def context(self) -> InferenceContext:
        self._require_loaded()
        return self._context

    def is_loaded(self) -> bool:
        return self._handle is not None and self._context is not None

    def _require_loaded(self) -> None:
        if not self.is_loaded():
            if self.load_error is not None:
                raise ModelNotLoadedError(
                    f"Model '{self.model_path}' failed to load: {self.load_error}"
                ) from self.load_error
            raise ModelNotLoadedError(f"Model '{self.model_path}' is not loaded")

    def _acquire(self) -> None:
        acquire_lock(self._lock, self.config.queue_timeout)
        if not self.is_loaded():
            self._lock.release()
            self._require_loaded()

    def prefetch(self) -> None:
        """Warm up the context. Calling it again changes nothing."""
        self._require_loaded()
        self._acquire()
        try:
            self._context.warm_up()
        finally:
            self._lock.release()

    def ingest_embedding(self, buffer: Any, length: int) -> bool:
        """Append an image embedding to the context.

        Args:
            buffer: Float values (sequence, numpy array, ``array.array`` or
                tensor). Copied before this call returns.
            length: Number of values; must equal the model's embedding dimension.

        Returns:
            True if the embedding was appended, False if it was skipped because
            it barely differs from the previous one (see
            ``embedding_delta_threshold``).

        Raises:
            ModelNotLoadedError: If the model is not loaded.
            EmbeddingDimensionMismatchError: If ``length`` is wrong.
            ContextFullError: If the context is full under the reject policy.
        """
        self._require_loaded()
        self._acquire()
        try:
            threshold = self.config.embedding_delta_threshold
            if threshold > 0 and self._last_embedding is not None and length == self._last_embedding.numel():
                candidate = copy_buffer(buffer, length)
                delta = (candidate - self._last_embedding).abs().mean().item()
                if delta < threshold:
                    logger.debug("Skipped embedding (mean delta %.5f < %.5f)", delta, threshold)
                    return False

            self._last_embedding = self._injector.inject(buffer, length, self._context)
            return True
        finally:
            self._lock.release()

    def stream_response(
        self,
        prompt: Union[str, GenerationRequest],
        max_tokens: Optional[int] = None,
        stop_sequences: Sequence[str] = (),
    ) -> GenerationStream:
        """Start a streaming generation.

        The stream takes the context when first iterated and holds it until
        it is exhausted or closed.
        """
        self._require_loaded()
        if isinstance(prompt, GenerationRequest):
            request = prompt
        else:
            request = GenerationRequest(prompt=prompt, max_tokens=max_tokens, stop_sequences=stop_sequences)
        return self._engine.generate(
            self._context, request, lock=self._lock, timeout=self.config.queue_timeout
        )

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run a generation to completion and return its result."""
        return self.stream_response(request).collect()

    def generate_response(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        stop_sequences: Sequence[str] = (),
    ) -> str:
        """Generate a response to ``prompt`` and return the full text.

        Raises:
            ModelNotLoadedError: If the model is not loaded.
            EmptyInputError: If the prompt is blank and nothing was ingested.
            ContextFullError: If the prompt does not fit under the reject policy.
            ContextBusyError: If the context could not be acquired in time.
            DecodeFailureError: If the model failed mid-generation; its
                ``partial_output`` holds the text produced before the failure.
        """
        result = self.generate(
            GenerationRequest(prompt=prompt, max_tokens=max_tokens, stop_sequences=stop_sequences)
        )
        if result.state == GenerationState.FAILED:
            raise result.error
        return result.text

    def current_position(self) -> int:
        self._require_loaded()
        return self._context.current_position()

    def stats(self) -> dict:
        self._require_loaded()
        return self._context.stats()

    def reset(self) -> None:
        """Clear the conversation; the next prefetch warms the context again."""
        self._require_loaded()
        self._acquire()
        try:
            self._context.reset()
            self._last_embedding = None
        finally:
            self._lock.release()

    def close(self) -> None:
        """Release the context and the model. The bridge is unusable afterwards.

        A model loaded through a shared store stays cached there for the
        other bridges; a private store drops it.
        """
        if not self.is_loaded():
            return
        with self._lock:
            if not self.is_loaded():
                return
            self._context.close()
            self._context = None
            self._handle = None
            self._last_embedding = None
        if self._owns_store:
            self.store.unload(self.model_path)
        logger.info("Bridge for %s closed", self.model_path)
