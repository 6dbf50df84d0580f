from __future__ import annotations


class SseDecoder:
    """Assembles Server-Sent-Events lines into frame payloads.

    Only ``data:`` fields carry content here; ``event:``, ``id:``, ``retry:``
    and comment lines are accepted and ignored.
    """

    def __init__(self) -> None:
        self._data: list[str] = []

    def feed(self, line: str) -> str | None:
        """Consume one line; return the frame payload when a frame completes."""
        line = line.rstrip("\r\n")
        if not line.strip():
            return self.flush()
        if line.startswith(":"):
            return None
        # A line without a colon is a field name with an empty value.
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        return None

    def flush(self) -> str | None:
        if not self._data:
            return None
        payload = "\n".join(self._data)
        self._data.clear()
        return payload
