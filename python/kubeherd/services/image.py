"""
kubeherd/services/image.py

A local, directory-backed image service: cluster images are unpacked under
`<image_dir>/<name>/<tag>/<platform>`. Pulling from a remote store is outside
this project, so a missing image is an error rather than a download.
"""

from __future__ import annotations

import os
from typing import Sequence, Tuple

import aiofiles.os

from kubeherd.errors import ConfigurationError
from kubeherd.services.interfaces import ImageService, Platform


def split_image(image: str) -> Tuple[str, str]:
    """Split `registry/name:tag` into (name, tag); the tag defaults to latest."""
    if ":" in image.rsplit("/", 1)[-1]:
        name, tag = image.rsplit(":", 1)
        return name, tag
    return image, "latest"


def image_dir_name(image: str) -> str:
    return split_image(image)[0].replace("/", "_")


def image_path(image_dir: str, image: str, platform: Platform) -> str:
    return os.path.join(
        image_dir,
        image_dir_name(image),
        split_image(image)[1],
        str(platform).replace("/", "_"),
    )


class LocalImageService(ImageService):
    def __init__(self, image_dir: str) -> None:
        self.image_dir = os.path.expanduser(image_dir)

    def path_for(self, image: str, platform: Platform) -> str:
        return image_path(self.image_dir, image, platform)

    async def pull_if_not_exist(self, image: str, platforms: Sequence[Platform]) -> None:
        if not image:
            raise ConfigurationError("cluster image cannot be empty")
        missing = [
            str(p)
            for p in platforms
            if not await aiofiles.os.path.isdir(self.path_for(image, p))
        ]
        if missing:
            raise ConfigurationError(
                f"image {image} not found in {self.image_dir} for platform(s): "
                f"{', '.join(missing)}"
            )
