import codecs
import json

DATA_PREFIX = "data: "
DONE = "[DONE]"
DONE_FRAME = f"{DATA_PREFIX}{DONE}\n\n"
STREAM_ERROR = "Stream error occurred"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_data(payload: str) -> str:
    return f"{DATA_PREFIX}{payload}\n\n"


def error_frame(message: str = STREAM_ERROR) -> str:
    return format_data(json.dumps({"error": message}))


class LineBuffer:
    """Splits a byte stream into lines, carrying partial lines across chunks.

    Multi-byte UTF-8 sequences cut by a chunk boundary are held back until
    the rest of the sequence arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._tail = ""

    def feed(self, chunk) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        text = self._tail + chunk
        lines = text.split("\n")
        self._tail = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever unterminated text is left at end of stream."""
        text = self._tail + self._decoder.decode(b"", final=True)
        self._tail = ""
        return [text.rstrip("\r")] if text else []
