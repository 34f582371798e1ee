"""Speech-to-text: recognizer protocol, debounce adapter, Deepgram backend."""

from .adapter import RecognitionResult, Recognizer, SpeechToTextAdapter

__all__ = ["RecognitionResult", "Recognizer", "SpeechToTextAdapter"]
