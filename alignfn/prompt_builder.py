"""
Prompt Builder

Composes the prompt for one call of a patched function:

    instruction → output shape (with field hints) → alignment examples
    (declaration order) → live input

The layout is fully deterministic so identical inputs always reproduce
identical prompts. With no examples the prompt degrades to zero-shot.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from .distillation.models import AlignmentExample
from .output_decoder import OutputDecoder
from .signature import FunctionSignature


class PromptBuilder:
    """Builds call and repair prompts for a signature."""

    def __init__(self, decoder: Optional[OutputDecoder] = None):
        self.decoder = decoder or OutputDecoder()

    def build(
        self,
        signature: FunctionSignature,
        examples: Sequence[AlignmentExample],
        inputs: Dict[str, Any],
    ) -> str:
        """
        Compose the prompt for a live call.

        Args:
            signature: The patched function's signature
            examples: Alignment examples in declaration order (may be empty)
            inputs: Bound call arguments

        Returns:
            Prompt text
        """
        sections: List[str] = [
            f"You are executing the function `{signature.name}`.",
            f"Instruction:\n{signature.prompt.strip()}",
            f"The output must be a JSON value of this shape:\n{signature.output.describe()}",
            "Respond with the JSON value only, without explanations or code fences.",
        ]

        if examples:
            example_lines = ["Examples:"]
            for example in examples:
                example_lines.append(f"Input: {self.format_inputs(signature, example.inputs)}")
                label = "Output (only the listed fields are fixed)" if example.partial else "Output"
                example_lines.append(f"{label}: {self.format_output(signature, example.expected)}")
                example_lines.append("")
            sections.append("\n".join(example_lines).rstrip())

        sections.append(f"Input: {self.format_inputs(signature, inputs)}\nOutput:")
        return "\n\n".join(sections)

    def build_repair(self, prompt: str, raw_output: str, reason: str) -> str:
        """
        Compose a repair prompt for an output that failed validation.

        Args:
            prompt: The original prompt
            raw_output: The invalid response
            reason: Validation failure description

        Returns:
            Prompt text asking for a corrected response
        """
        return "\n\n".join([
            prompt,
            f"Your previous response was:\n{raw_output}",
            f"That response was rejected: {reason}",
            "Respond again with a corrected JSON value that matches the output shape. "
            "Respond with the JSON value only.\nOutput:",
        ])

    def format_inputs(self, signature: FunctionSignature, inputs: Dict[str, Any]) -> str:
        rendered = {
            param.name: self.decoder.to_jsonable(inputs.get(param.name), param.type)
            for param in signature.inputs
        }
        return json.dumps(rendered, ensure_ascii=False)

    def format_output(self, signature: FunctionSignature, value: Any) -> str:
        return self.decoder.encode(value, signature.output)
