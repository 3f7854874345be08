"""
Transformation hook invoked after a message is materialized.

Rendering EML into HTML or Markdown and extracting attachments happen
outside the mirror; the engine only calls this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from mailmirror.models.entities import Message


@dataclass
class InlineTransformOptions:
    """Which derived outputs to produce right after download."""
    generate_html: bool = False
    generate_markdown: bool = False
    extract_attachments: bool = False

    @property
    def enabled(self) -> bool:
        return self.generate_html or self.generate_markdown or self.extract_attachments


class TransformationService(ABC):
    """Produces derived outputs for a stored message."""

    @abstractmethod
    async def transform_single_message(
        self,
        message: Message,
        options: InlineTransformOptions,
    ) -> bool:
        """
        Transform one freshly stored message.

        Returns:
            True if every requested output was produced
        """
        pass
