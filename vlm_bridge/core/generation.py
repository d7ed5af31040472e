"""
Token generation loop.

GenerationEngine turns a request into a GenerationStream, an iterator of
TextFragments produced one decode step at a time. Each step computes the
pending context entries, samples the next token, appends it to the context
and emits whatever text has become final:

- text that decodes to an incomplete character is held until it completes
- text that could still be the start of a stop sequence is held until the
  next tokens rule the stop sequence in or out

Generation ends on the first of: end-of-sequence token, stop sequence, token
budget, full context (reject policy only), cancellation, or a model error.
The outcome is recorded in ``stream.result`` once the stream is exhausted.
"""

import logging
import threading
from typing import Iterator, List, Optional

from vlm_bridge.config import BridgeConfig, OverflowPolicy, get_config
from vlm_bridge.core.context import InferenceContext
from vlm_bridge.core.request import (
    GenerationRequest,
    GenerationResult,
    GenerationState,
    StopReason,
    TextFragment,
)
from vlm_bridge.errors import (
    ContextBusyError,
    DecodeFailureError,
    EmptyInputError,
    ModelNotLoadedError,
)
from vlm_bridge.sampling.sampling import sample
from vlm_bridge.sampling.stop_checker import StopChecker

logger = logging.getLogger(__name__)


def acquire_lock(lock: threading.Lock, timeout: Optional[float] = None) -> None:
    """Acquire ``lock``, waiting at most ``timeout`` seconds (None waits forever).

    Raises:
        ContextBusyError: If the lock could not be acquired in time.
    """
    if timeout is None:
        acquired = lock.acquire()
    elif timeout == 0:
        acquired = lock.acquire(blocking=False)
    else:
        acquired = lock.acquire(timeout=timeout)
    if not acquired:
        raise ContextBusyError(
            f"Context is in use by another call (waited {timeout or 0:.2f}s)"
        )


class GenerationStream:
    """Iterator over the text fragments of one generation.

    The stream is finite and cannot be restarted. When created with a lock
    it acquires it on the first iteration and holds it until the stream is
    exhausted or closed.

    Attributes:
        result: GenerationResult, available once the stream has finished.
    """

    def __init__(
        self,
        engine: "GenerationEngine",
        context: InferenceContext,
        request: GenerationRequest,
        lock: Optional[threading.Lock] = None,
        timeout: Optional[float] = None,
    ):
        self.engine = engine
        self.context = context
        self.request = request
        self.result: Optional[GenerationResult] = None

        self._lock = lock
        self._timeout = timeout
        self._cancel_event = request.cancel_event or threading.Event()
        self._token_ids: List[int] = []
        self._text: List[str] = []
        self._started = False
        self._step_lock = threading.Lock()
        self._iterator = self._run()

    def __iter__(self) -> "GenerationStream":
        return self

    def __next__(self) -> TextFragment:
        with self._step_lock:
            return next(self._iterator)

    @property
    def text(self) -> str:
        """Text emitted so far."""
        return "".join(self._text)

    def cancel(self) -> None:
        """Request cancellation.

        A started stream that is not mid-step finishes immediately and
        releases the context. Otherwise cancellation takes effect at the
        next decode step.
        """
        self._cancel_event.set()
        if not self._step_lock.acquire(blocking=False):
            return
        try:
            if self._started:
                self._iterator.close()
        finally:
            self._step_lock.release()

    def close(self) -> None:
        """Stop the stream early and release the context."""
        self._iterator.close()

    def collect(self) -> GenerationResult:
        """Consume the remaining fragments and return the result."""
        for _ in self:
            pass
        return self.result

    def _run(self) -> Iterator[TextFragment]:
        if self._lock is not None:
            acquire_lock(self._lock, self._timeout)
        self._started = True
        try:
            yield from self._generate()
        except GeneratorExit:
            if self.result is None:
                self._finish(GenerationState.CANCELLED, StopReason.CANCELLED)
            raise
        finally:
            if self._lock is not None:
                self._lock.release()

    def _prepare(self) -> None:
        context = self.context
        request = self.request
        tokenizer = context.handle.tokenizer

        if context.is_closed:
            raise ModelNotLoadedError("Context was closed before the generation started")

        has_prompt = bool(request.prompt.strip())
        if not has_prompt and context.current_position() == 0:
            raise EmptyInputError("Prompt is empty and the context holds nothing to condition on")

        if has_prompt:
            prompt = request.prompt
            if request.apply_template and self.engine.config.apply_prompt_template:
                prompt = tokenizer.apply_template(prompt)
            context.append_tokens(tokenizer.encode(prompt))

        if context.current_position() == 0:
            raise EmptyInputError("Prompt produced no tokens and the context is empty")

    def _generate(self) -> Iterator[TextFragment]:
        self._prepare()

        context = self.context
        request = self.request
        config = self.engine.config
        tokenizer = context.handle.tokenizer
        eos_token_id = context.handle.eos_token_id

        max_tokens = request.max_tokens if request.max_tokens is not None else config.max_new_tokens
        params = request.sampling_params or config.sampling_params()
        decoder = tokenizer.incremental_decoder()
        stopper = StopChecker(request.stop_sequences)
        emitted = 0

        while True:
            if self._cancel_event.is_set():
                state, reason = GenerationState.CANCELLED, StopReason.CANCELLED
                break
            if len(self._token_ids) >= max_tokens:
                state, reason = GenerationState.TRUNCATED, StopReason.MAX_TOKENS
                break
            if context.overflow_policy == OverflowPolicy.REJECT and context.is_full():
                state, reason = GenerationState.TRUNCATED, StopReason.CONTEXT_FULL
                break

            try:
                logits = context.forward()
                token_id = sample(logits, params, self._token_ids, context.generator)
            except RuntimeError as exc:
                logger.error("Decode step %d failed: %s", len(self._token_ids), exc)
                yield from self._flush(decoder, stopper, emitted)
                error = DecodeFailureError(f"Model execution failed: {exc}", partial_output=self.text)
                error.__cause__ = exc
                self._finish(GenerationState.FAILED, StopReason.ERROR, error)
                return

            if token_id == eos_token_id:
                state, reason = GenerationState.COMPLETED, StopReason.EOS
                break

            context.append_tokens([token_id])
            self._token_ids.append(token_id)
            decoder.push(token_id)

            safe_end, stopped = stopper.check(decoder.text, emitted)
            if safe_end > emitted:
                yield self._emit(decoder.text[emitted:safe_end], token_id)
                emitted = safe_end
            if stopped:
                self._finish(GenerationState.COMPLETED, StopReason.STOP_SEQUENCE)
                return

        yield from self._flush(decoder, stopper, emitted)
        self._finish(state, reason)

    def _flush(self, decoder, stopper: StopChecker, emitted: int) -> Iterator[TextFragment]:
        """Emit text held back for completion once generation has ended."""
        decoder.flush()
        text = decoder.text
        safe_end, stopped = stopper.check(text, emitted)
        end = safe_end if stopped else len(text)
        if end > emitted:
            yield self._emit(text[emitted:end], self._token_ids[-1])

    def _emit(self, text: str, token_id: int) -> TextFragment:
        fragment = TextFragment(text=text, token_id=token_id, index=len(self._text))
        self._text.append(text)
        return fragment

    def _finish(
        self,
        state: GenerationState,
        reason: StopReason,
        error: Optional[DecodeFailureError] = None,
    ) -> None:
        self.result = GenerationResult(
            text=self.text,
            state=state,
            stop_reason=reason,
            token_ids=list(self._token_ids),
            error=error,
        )
        logger.debug(
            "Generation finished: %s (%s), %d tokens",
            state.value, reason.value, len(self._token_ids),
        )


class GenerationEngine:
    """Creates generation streams over an inference context."""

    def __init__(self, config: Optional[BridgeConfig] = None):
        self.config = config or get_config()

    def generate(
        self,
        context: InferenceContext,
        request: GenerationRequest,
        lock: Optional[threading.Lock] = None,
        timeout: Optional[float] = None,
    ) -> GenerationStream:
        """Start a generation.

        Nothing runs until the stream is iterated. The first iteration
        validates the request and appends the prompt to the context.

        Raises (on first iteration):
            EmptyInputError: If the prompt is blank and the context is empty.
            ContextFullError: If the prompt does not fit under the reject policy.
            ContextBusyError: If ``lock`` could not be acquired in time.
            ModelNotLoadedError: If the context was closed before the stream started.
        """
        return GenerationStream(self, context, request, lock=lock, timeout=timeout)
