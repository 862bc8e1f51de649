# uploads.py: local-disk storage for article PDFs and understanding materials
import logging
import time
from pathlib import Path
from typing import Dict, Iterable, List

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from errors import ValidationError

logger = logging.getLogger(__name__)

PDF_FOLDER = "muk-pdfs"
MATERIALS_FOLDER = "muk-materials"
MAX_MATERIALS = 10


class LocalUploadStore:
    """
    Saves uploads under `root/<folder>/` and describes each one as
    {name, url, size}. The store never sees file bytes, only these triples.
    """

    def __init__(self, root, base_url: str = "/uploads"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def save(self, file: FileStorage, folder: str, allowed_suffixes: Iterable[str] = ()) -> Dict[str, object]:
        original = file.filename or ""
        safe = secure_filename(original)
        if not safe:
            raise ValidationError("Uploaded file has no usable name")

        allowed = tuple(s.lower() for s in allowed_suffixes)
        if allowed and not safe.lower().endswith(allowed):
            raise ValidationError(f"Only {', '.join(allowed)} files are allowed")

        # Same naming as the media folders: <millis>-<original name>
        stored_name = f"{int(time.time() * 1000)}-{safe}"
        target_dir = self.root / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / stored_name
        file.save(str(target))

        size = target.stat().st_size
        logger.info("📎 Stored upload %s (%d bytes)", target, size)
        return {
            "name": original,
            "url": f"{self.base_url}/{folder}/{stored_name}",
            "size": size,
        }

    def save_pdf(self, file: FileStorage) -> Dict[str, object]:
        return self.save(file, PDF_FOLDER, allowed_suffixes=(".pdf",))

    def save_materials(self, files: List[FileStorage]) -> List[Dict[str, object]]:
        if len(files) > MAX_MATERIALS:
            raise ValidationError(f"At most {MAX_MATERIALS} materials can be uploaded at once")
        return [self.save(f, MATERIALS_FOLDER) for f in files if f and f.filename]
