"""
Local inference worker.

Run as ``python -m toolbridge.models.local_worker --model-path <dir>``.  Loads a causal LM with
Hugging Face ``transformers``, prints ``LOCAL_MODEL_READY`` and then answers one JSON request per
stdin line with one JSON reply per stdout line.  ``QUIT`` ends the loop.

stdout carries only the protocol; logs go to stderr.
"""

import argparse
import json
import logging
import sys
from typing import (
    Any,
    Dict,
    TextIO,
)

logger = logging.getLogger("toolbridge.local_worker")

READY_MARKER = "LOCAL_MODEL_READY"
QUIT_COMMAND = "QUIT"


class LocalInference:
    """Thin wrapper around a tokenizer/model pair."""

    def __init__(self, model_path: str, max_tokens: int, temperature: float, top_p: float) -> None:
        self.model_path = model_path
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.model: Any = None
        self.tokenizer: Any = None
        self._torch: Any = None

    def load(self) -> None:
        """Load tokenizer and weights; GPU when available."""
        # pylint: disable=import-outside-toplevel
        import torch
        from transformers import (
            AutoModelForCausalLM,
            AutoTokenizer,
        )

        self._torch = torch
        self.tokenizer = AutoTokenizer.from_pretrained(self.model_path, trust_remote_code=True)
        self.model = AutoModelForCausalLM.from_pretrained(
            self.model_path,
            device_map="auto" if torch.cuda.is_available() else None,
            trust_remote_code=True,
        )

    def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        if system_prompt:
            full_prompt = f"System: {system_prompt}\n\nUser: {prompt}\n\nAssistant:"
        else:
            full_prompt = f"User: {prompt}\n\nAssistant:"

        inputs = self.tokenizer(full_prompt, return_tensors="pt").to(self.model.device)
        with self._torch.no_grad():
            outputs = self.model.generate(
                inputs.input_ids,
                max_new_tokens=max_tokens or self.max_tokens,
                temperature=temperature if temperature is not None else self.temperature,
                top_p=self.top_p,
                do_sample=True,
                pad_token_id=self.tokenizer.eos_token_id,
            )
        response = self.tokenizer.decode(
            outputs[0][inputs.input_ids.shape[1] :], skip_special_tokens=True
        )
        return response.strip()


def handle_line(engine: LocalInference, line: str) -> Dict[str, Any]:
    """Answer one request line.  Never raises."""
    try:
        request = json.loads(line)
    except json.JSONDecodeError:
        return {"success": False, "error": "Invalid JSON request"}
    if not isinstance(request, dict):
        return {"success": False, "error": "Request must be a JSON object"}

    try:
        response = engine.generate(
            str(request.get("prompt", "")),
            str(request.get("system_prompt", "")),
            request.get("max_tokens"),
            request.get("temperature"),
        )
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Error generating response")
        return {"success": False, "error": str(exc)}
    return {"success": True, "response": response}


def serve(engine: LocalInference, stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> None:
    """Request loop; returns on ``QUIT`` or end of input."""
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        if line == QUIT_COMMAND:
            break
        print(json.dumps(handle_line(engine, line)), file=stdout, flush=True)
    logger.info("Shutting down local inference worker")


def main() -> None:
    parser = argparse.ArgumentParser(description="toolbridge local inference worker")
    parser.add_argument("--model-path", required=True, help="Directory or hub id of the model")
    parser.add_argument("--max-tokens", type=int, default=4096)
    parser.add_argument("--temperature", type=float, default=0.7)
    parser.add_argument("--top-p", type=float, default=0.9)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )

    engine = LocalInference(args.model_path, args.max_tokens, args.temperature, args.top_p)
    try:
        engine.load()
    except Exception:  # pylint: disable=broad-except
        logger.exception("Error loading model from %s", args.model_path)
        sys.exit(1)

    print(READY_MARKER, flush=True)
    try:
        serve(engine)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
