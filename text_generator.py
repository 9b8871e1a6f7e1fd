"""Utilities for running local large language models.

This module exposes :class:`TextGenerator`, a small wrapper around a Hugging
Face Transformers causal language model used by the story pipeline as its
local completion backend.  A few details worth knowing:

* Prompts are submitted as a single-turn conversation through the
  tokenizer's chat template when the model ships one, and as raw text
  otherwise.
* :meth:`TextGenerator.stream_response` runs ``model.generate`` on a worker
  thread and yields decoded text fragments as soon as the
  ``TextIteratorStreamer`` releases them.
* Passing a ``threading.Event`` as ``cancel_event`` stops token generation
  at the next decoding step once the event is set.
* 4-bit loading falls back gracefully when ``bitsandbytes`` or a GPU is not
  available.

Flask initialises a single instance per application and reuses it for every
story run.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Iterator, List, Optional

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    StoppingCriteria,
    StoppingCriteriaList,
    TextIteratorStreamer,
)

try:  # ``BitsAndBytesConfig`` requires an optional dependency (bitsandbytes).
    from transformers import BitsAndBytesConfig  # type: ignore
except ImportError:  # pragma: no cover - transformers should always provide this
    BitsAndBytesConfig = None  # type: ignore


LOGGER = logging.getLogger(__name__)


class CancelEventCriteria(StoppingCriteria):
    """Stop generation as soon as ``event`` is set."""

    def __init__(self, event: threading.Event):
        self.event = event

    def __call__(self, input_ids: torch.LongTensor, scores: torch.FloatTensor, **kwargs: Any) -> torch.BoolTensor:
        return torch.full(
            (input_ids.shape[0],),
            self.event.is_set(),
            dtype=torch.bool,
            device=input_ids.device,
        )


class TextGenerator:
    def __init__(
        self,
        model_path: str,
        *,
        temperature: Optional[float] = 0.8,
        top_p: Optional[float] = 0.95,
        max_new_tokens: int = 512,
        seed: int = 42,
        device_map: str | Dict[str, Any] | None = "auto",
        use_4bit: bool = True,
        trust_remote_code: bool = False,
    ):
        self.model_path = model_path
        self.temperature = temperature
        self.top_p = top_p
        self.max_new_tokens = max_new_tokens
        self.seed = seed
        self.device_map = device_map
        self.use_4bit = use_4bit
        self.trust_remote_code = trust_remote_code

        # Seed CPU (+ all GPUs if present)
        torch.manual_seed(seed)
        if torch.cuda.is_available():
            torch.cuda.manual_seed_all(seed)

        quantization_config = self._build_quantization_config()
        model_kwargs: Dict[str, Any] = {
            "device_map": self.device_map,
            "torch_dtype": "auto",
            "trust_remote_code": trust_remote_code,
        }
        if quantization_config is not None:
            model_kwargs["quantization_config"] = quantization_config

        self.model = AutoModelForCausalLM.from_pretrained(model_path, **model_kwargs)
        self.model.eval()
        self._compute_device_label = self._detect_compute_device()

        self.tokenizer = AutoTokenizer.from_pretrained(
            model_path,
            trust_remote_code=trust_remote_code,
        )
        if self.tokenizer.pad_token is None:
            # Many causal models do not ship with a dedicated pad token.
            self.tokenizer.pad_token = self.tokenizer.eos_token

    def _build_quantization_config(self) -> Optional[BitsAndBytesConfig]:
        """Return a 4-bit quantisation config when supported.

        Without ``bitsandbytes`` (or on CPU) the model simply loads in
        standard precision.  Logging happens at INFO level so operators can
        verify whether quantisation is active.
        """

        if not self.use_4bit:
            return None

        if BitsAndBytesConfig is None:
            LOGGER.info("transformers BitsAndBytesConfig unavailable; using full precision model loading.")
            return None

        if not torch.cuda.is_available():
            LOGGER.info("CUDA is not available; skipping 4-bit quantisation.")
            return None

        try:  # Ensure optional dependency is present before configuring.
            import bitsandbytes  # type: ignore  # noqa: F401
        except ImportError:
            LOGGER.info("bitsandbytes not installed; using full precision model loading.")
            return None

        LOGGER.info("Loading model with 4-bit quantisation enabled.")
        return BitsAndBytesConfig(
            load_in_4bit=True,
            bnb_4bit_use_double_quant=True,
            bnb_4bit_quant_type="nf4",
            bnb_4bit_compute_dtype=torch.float16,
        )

    def _render_conversation(self, prompt: str) -> str:
        """Wrap ``prompt`` as the opening user turn of a new conversation."""

        if not getattr(self.tokenizer, "chat_template", None):
            return prompt
        messages = [{"role": "user", "content": prompt}]
        return self.tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)

    def _resolve_max_new_tokens(self, max_new_tokens: Optional[int]) -> int:
        tokens_to_generate = self.max_new_tokens if max_new_tokens is None else max_new_tokens
        try:
            tokens_to_generate = int(tokens_to_generate)
        except (TypeError, ValueError) as exc:
            raise ValueError("max_new_tokens must be a positive integer") from exc
        if tokens_to_generate <= 0:
            raise ValueError("max_new_tokens must be a positive integer")
        return tokens_to_generate

    def _prepare_generation_kwargs(
        self,
        max_new_tokens: int,
        *,
        temperature: Optional[float],
        top_p: Optional[float],
        **extra_parameters: Any,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "max_new_tokens": max_new_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "top_p": self.top_p if top_p is None else top_p,
            "do_sample": True,
            "pad_token_id": self.tokenizer.pad_token_id,
        }

        # Remove unset sampling parameters so Hugging Face can apply defaults.
        if kwargs["temperature"] is None:
            kwargs.pop("temperature")
        if kwargs["top_p"] is None:
            kwargs.pop("top_p", None)

        for key, value in extra_parameters.items():
            if value is not None:
                kwargs[key] = value

        return kwargs

    def stream_response(
        self,
        prompt: str,
        *,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        **extra_parameters: Any,
    ) -> Iterator[str]:
        """Yield the reply to ``prompt`` fragment by fragment.

        Parameters
        ----------
        prompt:
            The user message that opens the conversation.
        max_new_tokens:
            Optional override for the number of new tokens to generate.  The
            generator wide default configured at instantiation time is used
            otherwise.
        cancel_event:
            When set, decoding stops after the current step and the stream
            ends with whatever was produced so far.
        """
        generation_kwargs = self._prepare_generation_kwargs(
            self._resolve_max_new_tokens(max_new_tokens),
            temperature=temperature,
            top_p=top_p,
            **extra_parameters,
        )
        if cancel_event is not None:
            generation_kwargs["stopping_criteria"] = StoppingCriteriaList([CancelEventCriteria(cancel_event)])

        enc = self.tokenizer(self._render_conversation(prompt), return_tensors="pt").to(self.model.device)
        streamer = TextIteratorStreamer(self.tokenizer, skip_prompt=True, skip_special_tokens=True)
        failures: List[BaseException] = []

        def _run() -> None:
            try:
                with torch.no_grad():
                    self.model.generate(**enc, **generation_kwargs, streamer=streamer)
            except Exception as exc:
                failures.append(exc)
                # Release the consumer; it re-raises below.
                streamer.end()

        t0 = time.perf_counter()
        worker = threading.Thread(target=_run, name="text-generator", daemon=True)
        worker.start()
        try:
            for fragment in streamer:
                if fragment:
                    yield fragment
        finally:
            worker.join()
            self._compute_device_label = self._detect_compute_device()
            LOGGER.debug("Local generation finished in %.2fs", time.perf_counter() - t0)

        if failures:
            raise failures[0]

    def generate_response(
        self,
        prompt: str,
        *,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        **extra_parameters: Any,
    ) -> str:
        """Generate a response to ``prompt`` without echoing it back."""
        fragments = self.stream_response(
            prompt,
            max_new_tokens=max_new_tokens,
            temperature=temperature,
            top_p=top_p,
            **extra_parameters,
        )
        return "".join(fragments).strip()

    def _detect_compute_device(self) -> str:
        """Return a human readable label describing the active compute device."""

        try:
            parameter = next(self.model.parameters())
        except StopIteration:  # pragma: no cover - defensive fallback
            device = getattr(self.model, "device", torch.device("cpu"))
        else:
            device = parameter.device

        device_str = str(device).lower()
        if any(token in device_str for token in ("cuda", "hip", "mps")):
            return "GPU"
        return "CPU"

    def get_compute_device(self) -> str:
        """Expose the last known compute device label."""

        return self._compute_device_label
