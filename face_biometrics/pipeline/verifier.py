import logging
import os
from dataclasses import dataclass
from typing import ClassVar, Optional, Sequence, Union

from face_biometrics.app.utils import cosine_similarity
from face_biometrics.db.record import EnrollmentRecord
from face_biometrics.db.store import LocalStore
from face_biometrics.pipeline.embedding import EmbeddingExtractor


logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.6


@dataclass(frozen=True)
class VerificationSuccess:
    kind: ClassVar[str] = "success"
    score: float


@dataclass(frozen=True)
class NoStoredRecord:
    kind: ClassVar[str] = "no_stored_record"


@dataclass(frozen=True)
class EmbeddingMismatch:
    kind: ClassVar[str] = "embedding_mismatch"
    score: float
    reason: str


@dataclass(frozen=True)
class SignatureMismatch:
    kind: ClassVar[str] = "signature_mismatch"
    reason: str


@dataclass(frozen=True)
class VerificationError:
    kind: ClassVar[str] = "error"
    reason: str


VerificationOutcome = Union[VerificationSuccess, NoStoredRecord, EmbeddingMismatch, SignatureMismatch, VerificationError]


class LocalVerifier:
    """Scores a new face against the stored enrollment.

    A mismatch is an outcome, not an exception: every public method returns a
    ``VerificationOutcome`` and only maps unexpected failures (I/O, extraction)
    to ``VerificationError``.
    """

    def __init__(
        self,
        store: LocalStore,
        extractor: EmbeddingExtractor,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        verify_signature: bool = True,
        require_public_key: bool = False,
    ):
        self.store = store
        self.extractor = extractor
        self.similarity_threshold = similarity_threshold
        self.verify_signature = verify_signature
        self.require_public_key = require_public_key

    def verify(self, image_path: str, public_key: Optional[str] = None, threshold: Optional[float] = None) -> VerificationOutcome:
        """Extract from both the enrolled image and ``image_path`` and compare.

        The stored vector is only used when the enrolled image is gone, so
        that both sides normally come out of the same extraction path.
        """
        stored = self.store.load()
        if stored is None:
            return NoStoredRecord()
        try:
            enrolled = stored.enrolled_image_path
            if enrolled and os.path.isfile(enrolled):
                reference = self.extractor.extract(enrolled)
            else:
                if enrolled:
                    logger.warning("Enrolled image %s missing, comparing against stored embedding", enrolled)
                reference = stored.embedding
            candidate = self.extractor.extract(image_path)
            return self._decide(reference, candidate, threshold, stored.biometric_public_key, public_key)
        except Exception as e:
            logger.warning("Verification failed: %s", e)
            return VerificationError(str(e))

    def verify_embedding(self, embedding: Sequence[float], threshold: Optional[float] = None) -> VerificationOutcome:
        """Compare an already extracted embedding with the stored vector. No signature check."""
        stored = self.store.load()
        if stored is None:
            return NoStoredRecord()
        try:
            return self._decide(stored.embedding, embedding, threshold, check_signature=False)
        except Exception as e:
            logger.warning("Verification failed: %s", e)
            return VerificationError(str(e))

    def verify_record(self, record: EnrollmentRecord, threshold: Optional[float] = None) -> VerificationOutcome:
        """Compare a freshly built export record (embedding and public key) with the stored one."""
        stored = self.store.load()
        if stored is None:
            return NoStoredRecord()
        try:
            return self._decide(
                stored.embedding, record.embedding, threshold, stored.biometric_public_key, record.biometric_public_key
            )
        except Exception as e:
            logger.warning("Verification failed: %s", e)
            return VerificationError(str(e))

    def score(self, a: Sequence[float], b: Sequence[float]) -> float:
        if not len(a) or not len(b):
            raise ValueError("Cannot compare an empty embedding")
        return cosine_similarity(a, b)

    def _decide(
        self,
        reference: Sequence[float],
        candidate: Sequence[float],
        threshold: Optional[float],
        stored_key: Optional[str] = None,
        new_key: Optional[str] = None,
        check_signature: bool = True,
    ) -> VerificationOutcome:
        thr = self.similarity_threshold if threshold is None else threshold
        score = self.score(reference, candidate)
        if score < thr:
            logger.info("Face mismatch, similarity %.3f < %.2f", score, thr)
            return EmbeddingMismatch(score, f"Face does not match. Similarity: {score:.2f} (need >= {thr})")
        if check_signature and self.verify_signature:
            mismatch = self._signature_mismatch(stored_key, new_key)
            if mismatch is not None:
                logger.info("Face matched but signing key differs")
                return mismatch
        logger.info("Face verified, similarity %.3f", score)
        return VerificationSuccess(score)

    def _signature_mismatch(self, stored_key: Optional[str], new_key: Optional[str]) -> Optional[SignatureMismatch]:
        if stored_key is None or new_key is None:
            if self.require_public_key:
                return SignatureMismatch("Public key missing, cannot confirm this is the enrolled device.")
            return None
        if stored_key != new_key:
            return SignatureMismatch("Signature does not match. This device is not the one that enrolled.")
        return None
