"""Renderer contract and a local manifest renderer.

The production renderer (burning signature images into a PDF, uploading
the result to object storage) lives outside this package. Services only
see ``Renderer.render_signed``.

``ManifestRenderer`` is the local stand-in used by the CLI and the
default API wiring: it appends a JSON manifest of the
placements to the base file as a trailing PDF comment, stores the
result as a new file and returns its URL. The signed bytes depend only
on the inputs, so the caller can retry it safely.
"""

import json
import logging
from typing import Protocol
from uuid import uuid4

from .errors import NotFound
from .models import RenderOptions, RenderResult, SignaturePlacement
from .repository import VersionStore

logger = logging.getLogger("signtrail.render")

MANIFEST_MARKER = b"\n%SignTrail-Manifest "


class Renderer(Protocol):
    async def render_signed(
        self,
        base_version_id: str,
        placements: list[SignaturePlacement],
        options: RenderOptions,
    ) -> RenderResult: ...


class ManifestRenderer:
    """Stamps a placement manifest onto the base file.

    Args:
        versions: Store holding the base file and receiving the output.
    """

    def __init__(self, versions: VersionStore) -> None:
        self._versions = versions

    @staticmethod
    def build_manifest(
        placements: list[SignaturePlacement], options: RenderOptions
    ) -> bytes:
        """Deterministic bytes describing the marks to draw."""
        payload = {
            "display_mark": options.display_mark,
            "verification_url": options.verification_url,
            "placements": [p.model_dump(mode="json") for p in placements],
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

    async def render_signed(
        self,
        base_version_id: str,
        placements: list[SignaturePlacement],
        options: RenderOptions,
    ) -> RenderResult:
        base = await self._versions.read_file(base_version_id)
        if base is None:
            raise NotFound(f"No file stored for version {base_version_id}")

        signed = base + MANIFEST_MARKER + self.build_manifest(placements, options) + b"\n"
        public_url = await self._versions.write_file(f"signed-{uuid4()}", signed)
        logger.info(
            "Rendered %d placement(s) onto version %s", len(placements), base_version_id[:8]
        )
        return RenderResult(signed_bytes=signed, public_url=public_url)
