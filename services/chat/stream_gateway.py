"""Streaming text generation over the OpenAI Responses API."""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

from openai import AsyncOpenAI

from services.chat.cancel_token import CancelToken, GenerationCancelled, GenerationFailed
from services.chat.prompts import SystemPromptLoader

logger = logging.getLogger(__name__)

RESPONSES_ROLE = {"user": "user", "model": "assistant"}


class StreamGateway(Protocol):
	"""Anything that turns (history, prompt) into a cancellable fragment stream."""

	def generate(
		self,
		history: Sequence[Dict[str, str]],
		prompt: str,
		cancel_token: CancelToken,
		generation_budget: Optional[int] = None,
	) -> AsyncIterator[str]:
		...


def reasoning_effort(budget: Optional[int]) -> Optional[str]:
	"""Translate a thinking-token budget into a Responses API reasoning effort."""
	if budget is None:
		return None
	if budget <= 0:
		return "minimal"
	if budget <= 2048:
		return "low"
	if budget <= 8192:
		return "medium"
	return "high"


def _message_item(role: str, text: str) -> Dict[str, Any]:
	content_type = "output_text" if role == "assistant" else "input_text"
	return {"type": "message", "role": role, "content": [{"type": content_type, "text": text}]}


class OpenAIStreamGateway:
	"""Yield reply fragments for one prompt from an AsyncOpenAI client."""

	def __init__(
		self,
		client: AsyncOpenAI,
		*,
		model: str = "gpt-5",
		prompt_loader: Optional[SystemPromptLoader] = None,
	) -> None:
		if client is None:
			raise ValueError("AsyncOpenAI client is required.")
		self.client = client
		self.model = model
		self.prompt_loader = prompt_loader

	async def build_input(self, history: Sequence[Dict[str, str]], prompt: str) -> List[Dict[str, Any]]:
		"""Assemble the Responses API `input` list."""
		items: List[Dict[str, Any]] = []
		system_prompt = await self.prompt_loader.get() if self.prompt_loader else None
		if system_prompt:
			items.append(_message_item("system", system_prompt))
		for turn in history:
			items.append(_message_item(RESPONSES_ROLE[turn["role"]], turn["text"]))
		items.append(_message_item("user", prompt))
		return items

	async def generate(
		self,
		history: Sequence[Dict[str, str]],
		prompt: str,
		cancel_token: CancelToken,
		generation_budget: Optional[int] = None,
	) -> AsyncIterator[str]:
		cancel_token.raise_if_cancelled()

		request: Dict[str, Any] = {
			"model": self.model,
			"input": await self.build_input(history, prompt),
			"stream": True,
		}
		effort = reasoning_effort(generation_budget)
		if effort is not None:
			request["reasoning"] = {"effort": effort}

		stream = None
		try:
			cancel_token.raise_if_cancelled()
			stream = await self.client.responses.create(**request)
			async for event in stream:
				cancel_token.raise_if_cancelled()
				event_type = getattr(event, "type", None)
				if event_type == "response.output_text.delta":
					delta = getattr(event, "delta", None)
					if delta:
						yield delta
				elif event_type in ("response.failed", "error"):
					raise GenerationFailed(_failure_detail(event))
		except (GenerationCancelled, GenerationFailed):
			raise
		except Exception as exc:
			if cancel_token.cancelled:
				raise GenerationCancelled("Generation cancelled.") from exc
			logger.error(f"OpenAI streaming error: {exc}")
			raise GenerationFailed("Failed to get a response from the model.") from exc
		finally:
			if stream is not None:
				close = getattr(stream, "close", None)
				if close is not None:
					try:
						await close()
					except Exception as exc:
						logger.debug(f"Ignoring error while closing stream: {exc}")


def _failure_detail(event: Any) -> str:
	"""Best-effort description of a failed stream event."""
	message = getattr(event, "message", None)
	if message:
		return str(message)
	response = getattr(event, "response", None)
	error = getattr(response, "error", None) if response is not None else None
	if error is not None:
		return str(getattr(error, "message", None) or error)
	return "Response generation failed."
