"""Per-instance copy-on-write overlay images.

Each instance boots from `{instance_id}-overlay.img`, a qcow2 overlay whose
backing file is the shared base image. The base is only ever read; all guest
writes land in the overlay, which is deleted at teardown.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import aiofiles.os

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.exceptions import ImageProvisionError
from qemu_testbed.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def _run_qemu_img(qemu_img_bin: Path, *args: str) -> tuple[int, str, str]:
    """Run qemu-img and return (returncode, stdout, stderr).

    Raises:
        ImageProvisionError: Binary missing or command timed out
    """
    try:
        proc = ProcessWrapper(
            await asyncio.create_subprocess_exec(
                str(qemu_img_bin),
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        )
    except FileNotFoundError as e:
        raise ImageProvisionError(
            f"qemu-img not found: {qemu_img_bin}",
            context={"qemu_img_bin": str(qemu_img_bin)},
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=constants.QEMU_IMG_TIMEOUT_SECONDS)
    except TimeoutError as e:
        await proc.kill()
        await proc.wait()
        raise ImageProvisionError(
            f"qemu-img {args[0]} timed out after {constants.QEMU_IMG_TIMEOUT_SECONDS}s",
            context={"args": list(args)},
        ) from e
    return proc.returncode or 0, stdout.decode(errors="replace"), stderr.decode(errors="replace")


async def inspect_image(image: Path, *, qemu_img_bin: Path) -> dict[str, Any]:
    """Return `qemu-img info --output=json` for an image.

    Raises:
        ImageProvisionError: qemu-img failed or printed something other than JSON
    """
    returncode, stdout, stderr = await _run_qemu_img(qemu_img_bin, "info", "--output=json", str(image))
    if returncode != 0:
        raise ImageProvisionError(
            f"qemu-img info failed: {stderr.strip()}",
            context={"image": str(image), "returncode": returncode},
            stderr=stderr,
        )
    try:
        info = json.loads(stdout)
    except json.JSONDecodeError as e:
        msg = f"qemu-img info returned invalid JSON for {image}"
        raise ImageProvisionError(msg, context={"image": str(image)}) from e
    if not isinstance(info, dict):
        msg = f"qemu-img info returned unexpected output for {image}"
        raise ImageProvisionError(msg, context={"image": str(image)})
    return info


async def create_overlay(
    base_image: Path,
    overlay_path: Path,
    *,
    qemu_img_bin: Path,
    context_id: str,
) -> Path:
    """Create a qcow2 overlay backed by base_image and verify it.

    Safe to call again for a retry: any overlay left by a previous attempt
    is removed first.

    Args:
        base_image: Shared read-only base image
        overlay_path: Where to create the overlay
        qemu_img_bin: qemu-img binary
        context_id: Instance id for logging

    Returns:
        overlay_path

    Raises:
        ImageProvisionError: Base unreadable, qemu-img failed, or the result is not
            a qcow2 overlay of base_image
    """
    base_image = base_image.resolve()
    if not await aiofiles.os.path.isfile(base_image) or not await asyncio.to_thread(os.access, base_image, os.R_OK):
        raise ImageProvisionError(
            f"Base image not found or unreadable: {base_image}",
            context={"instance_id": context_id, "base_image": str(base_image)},
        )

    try:
        await aiofiles.os.remove(overlay_path)
        logger.debug("Removed partial overlay from previous attempt", extra={"instance_id": context_id})
    except FileNotFoundError:
        pass
    except OSError as e:
        raise ImageProvisionError(
            f"Cannot remove stale overlay {overlay_path}: {e}",
            context={"instance_id": context_id, "overlay": str(overlay_path)},
        ) from e

    returncode, _stdout, stderr = await _run_qemu_img(
        qemu_img_bin,
        "create",
        "-f",
        "qcow2",
        "-b",
        str(base_image),
        "-F",
        "qcow2",
        str(overlay_path),
    )
    if returncode != 0:
        raise ImageProvisionError(
            f"qemu-img create failed: {stderr.strip()}",
            context={"instance_id": context_id, "overlay": str(overlay_path), "returncode": returncode},
            stderr=stderr,
        )

    info = await inspect_image(overlay_path, qemu_img_bin=qemu_img_bin)
    if info.get("format") != "qcow2":
        raise ImageProvisionError(
            f"Overlay is not qcow2 (format={info.get('format')!r})",
            context={"instance_id": context_id, "overlay": str(overlay_path)},
        )
    backing = info.get("full-backing-filename") or info.get("backing-filename")
    if backing is not None and Path(backing).resolve() != base_image:
        raise ImageProvisionError(
            f"Overlay backing file {backing} does not match base image {base_image}",
            context={"instance_id": context_id, "overlay": str(overlay_path), "backing": backing},
        )

    logger.info(
        "Overlay created",
        extra={"instance_id": context_id, "overlay": str(overlay_path), "base_image": str(base_image)},
    )
    return overlay_path
