"""Recognition backends and the per-user recognition session."""

from .backend import (
    CONNECTION_STATUS_PROPERTY,
    CancellationDetails,
    CancellationErrorCode,
    CancellationReason,
    PushAudioStream,
    RecognitionResult,
    Recognizer,
    RecognizerFactory,
)
from .deepgram import DeepgramPushStream, DeepgramRecognizer, DeepgramRecognizerFactory
from .session import RecognitionSession, RecognitionState

__all__ = [
    "CONNECTION_STATUS_PROPERTY",
    "CancellationDetails",
    "CancellationErrorCode",
    "CancellationReason",
    "PushAudioStream",
    "RecognitionResult",
    "Recognizer",
    "RecognizerFactory",
    "DeepgramPushStream",
    "DeepgramRecognizer",
    "DeepgramRecognizerFactory",
    "RecognitionSession",
    "RecognitionState",
]
