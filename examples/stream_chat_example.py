"""Example streaming a chat reply from a local model directory.

Usage:
    python examples/stream_chat_example.py /path/to/model "What is a tokenizer?"

The model directory must contain a HuggingFace causal LM with its tokenizer
files (for example a downloaded Qwen2.5-0.5B-Instruct snapshot).
"""

import asyncio
import logging
import sys

from tokenstream_lite import ControllerConfig, Request, TokenStreamController
from tokenstream_lite.controller.events import DoneEvent, ErrorEvent, TokenEvent, WarmupEvent


async def chat(model_path: str, question: str) -> None:
    controller = TokenStreamController(config=ControllerConfig(context_size=1024))
    await controller.start()
    try:
        # Load the model before the first request
        warmup_queue = controller.subscribe()
        controller.preload(model_path)
        warmup = await warmup_queue.get()
        controller.unsubscribe(warmup_queue)
        if isinstance(warmup, WarmupEvent) and warmup.error:
            print(f"Failed to load {model_path}: {warmup.error}")
            return

        history = [
            {"role": "user", "text": "Hi!"},
            {"role": "assistant", "text": "Hello! How can I help you today?"},
            {"role": "user", "text": question},
        ]
        request = Request(
            model_path=model_path,
            request_id="chat-1",
            turns=history,
            system_prompt="<|im_start|>system\nYou are a concise assistant.\n<|im_end|>\n",
            max_tokens=200,
        )

        async for event in controller.stream(request, inactivity_timeout=60.0):
            if isinstance(event, TokenEvent):
                print(event.text, end="", flush=True)
            elif isinstance(event, DoneEvent):
                print(f"\n\n[{event.tokens_per_second:.1f} tokens/s]")
            elif isinstance(event, ErrorEvent):
                print(f"\n[error: {event.message}]")
            else:
                print("\n[cancelled]")
    finally:
        await controller.stop()


def main():
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    asyncio.run(chat(sys.argv[1], sys.argv[2]))


if __name__ == "__main__":
    main()
