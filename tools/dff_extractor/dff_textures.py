"""Texture lookup callables for DFFLoader.

The loader never decodes textures. It hands the texture and mask names found
in each material to a lookup and stores whatever handle comes back.
"""
from pathlib import Path
from typing import Dict, Iterable, Optional, Union


class DirectoryTextureLookup:
    """Resolves texture names to image files inside a directory.

    Matching is case-insensitive on the file stem, since DFF files store
    texture names in arbitrary case. The handle returned is the image path.
    """

    DEFAULT_EXTENSIONS = (".png", ".tga", ".dds", ".bmp", ".jpg")

    def __init__(self, root: Union[str, Path], extensions: Iterable[str] = DEFAULT_EXTENSIONS,
                 recursive: bool = False):
        self.root = Path(root)
        self.extensions = tuple(ext.lower() for ext in extensions)
        self._index: Dict[str, Path] = {}

        pattern = "**/*" if recursive else "*"
        # Earlier extensions win when a texture exists in several formats
        candidates = sorted(
            (p for p in self.root.glob(pattern)
             if p.is_file() and p.suffix.lower() in self.extensions),
            key=lambda p: (self.extensions.index(p.suffix.lower()), str(p)),
        )
        for path in candidates:
            self._index.setdefault(path.stem.lower(), path)

    def __len__(self) -> int:
        return len(self._index)

    def __call__(self, name: str, mask_name: str = "") -> Optional[Path]:
        if not name:
            return None
        return self._index.get(name.lower())


def null_texture_lookup(name: str, mask_name: str = "") -> None:
    """Lookup that never finds a texture."""
    return None
