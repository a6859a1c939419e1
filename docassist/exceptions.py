"""
Error taxonomy for the DocAssist pipeline.

Three families, handled differently by the serving layer:

  InputValidationError -- bad identifiers, unsupported or empty documents.
                          Raised before any network call, never retried.
  CollaboratorError    -- embedding, vector search or completion failures.
                          Propagate as request failures unless the step has a
                          documented fallback (reformulation, summarisation).
  Trailer decode errors are not exceptions at all: the decoder logs and drops
  the metadata segment and the visible answer is still delivered.
"""
from __future__ import annotations


class DocAssistError(Exception):
    """Base class for every error raised by the pipeline."""


class InputValidationError(DocAssistError, ValueError):
    """The caller supplied something the pipeline cannot work with."""


class UnsupportedDocumentError(InputValidationError):
    """No text extractor is registered for the uploaded file type."""


class EmptyDocumentError(InputValidationError):
    """Text extraction succeeded but produced no usable text."""


class CollaboratorError(DocAssistError):
    """An external service (embeddings, vector index, LLM) failed."""


class RetrievalError(CollaboratorError):
    """Embedding or vector search failed; no context could be assembled."""


class GenerationError(CollaboratorError):
    """
    The answer completion failed.

    `partial_output` holds whatever text had already been streamed to the
    caller. It is empty when the failure happened before the first token,
    in which case nothing may be presented as an answer at all.
    """

    def __init__(self, message: str, partial_output: str = "") -> None:
        super().__init__(message)
        self.partial_output = partial_output

    @property
    def mid_stream(self) -> bool:
        return bool(self.partial_output)
