from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List

from ..engine.content import ContentPart, ImagePart, TextPart, embed_image

logger = logging.getLogger(__name__)


@dataclass
class ComposerState:
    """Draft turn: text plus attachments (data URIs, URLs, bytes or open file handles).

    Passed straight into `ChatClient.submit`; handles are resolved to data URIs
    there, so nothing needs to be recovered from the network layer later.
    """

    text: str = ""
    attachments: List[Any] = field(default_factory=list)

    def attach(self, source: Any) -> None:
        self.attachments.append(source)

    def clear(self) -> None:
        self.text = ""
        self.attachments = []

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.attachments

    def build_parts(self) -> List[ContentPart]:
        parts: List[ContentPart] = [TextPart(text=self.text.strip())]
        for source in self.attachments:
            url = embed_image(source)
            if url is None:
                logger.warning("composer_attachment_dropped type=%s", type(source).__name__)
                continue
            parts.append(ImagePart(url=url))
        return parts
