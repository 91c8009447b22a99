import json
import logging
import os
import tempfile
from dataclasses import replace
from typing import Optional

from face_biometrics.app.utils import remove_quietly, utc_iso_now
from face_biometrics.db.record import EnrollmentRecord


logger = logging.getLogger(__name__)

DEFAULT_RECORD_FILENAME = "biometric_export_data.json"
DEFAULT_IMAGE_FILENAME = "enrolled_face.jpg"


class LocalStore:
    """The single enrollment on this installation: a JSON document plus a sidecar image.

    Only this class reads or writes the two files. A document that cannot be
    parsed, or that has no embedding, loads as ``None``.
    """

    def __init__(
        self,
        data_dir: str,
        record_filename: str = DEFAULT_RECORD_FILENAME,
        image_filename: str = DEFAULT_IMAGE_FILENAME,
    ):
        self.data_dir = data_dir
        self.record_filename = record_filename
        self.image_filename = image_filename

    @property
    def record_path(self) -> str:
        return os.path.join(self.data_dir, self.record_filename)

    @property
    def image_path(self) -> str:
        return os.path.join(self.data_dir, self.image_filename)

    def save(self, record: EnrollmentRecord, enrolled_image: Optional[bytes] = None) -> EnrollmentRecord:
        """Overwrite the enrollment. Returns the record as written (image path and timestamp set)."""
        if not record.embedding:
            raise ValueError("Cannot save a record without an embedding")
        os.makedirs(self.data_dir, exist_ok=True)
        image_path = record.enrolled_image_path
        if enrolled_image is not None:
            self._write_atomic(self.image_path, enrolled_image)
            image_path = self.image_path
        stored = replace(record, enrolled_image_path=image_path, saved_at=utc_iso_now())
        body = json.dumps(stored.to_json(), indent=2).encode("utf-8")
        self._write_atomic(self.record_path, body)
        logger.info(
            "Enrollment saved (%d-dim embedding, signature=%s, image=%s)",
            len(stored.embedding),
            stored.has_signature,
            image_path is not None,
        )
        return stored

    def load(self) -> Optional[EnrollmentRecord]:
        try:
            with open(self.record_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return EnrollmentRecord.from_json(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, RecursionError) as e:
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors; deep nesting overflows the decoder
            logger.warning("Ignoring unreadable enrollment record %s: %s", self.record_path, e)
            return None

    def exists(self) -> bool:
        return os.path.isfile(self.record_path)

    def clear(self) -> None:
        for path in (self.record_path, self.image_path):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
        logger.info("Enrollment cleared")

    def _write_atomic(self, path: str, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(prefix=".tmp_", dir=os.path.dirname(path))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            remove_quietly(tmp)
            raise
