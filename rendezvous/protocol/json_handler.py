import json

from rendezvous.errors import MalformedMessage

MAX_FRAME_SIZE = 1024 * 1024


def dump_frame(obj) -> bytes:
    """
    Serialize a JSON object into one frame, ending with a newline.
    """
    return (json.dumps(obj, separators=(",", ":")) + '\n').encode('utf-8')


def send_json(stream, obj):
    """
    Write one frame to a socket or a writable binary stream.
    """
    frame = dump_frame(obj)
    if hasattr(stream, "sendall"):
        stream.sendall(frame)
    else:
        stream.write(frame)
        stream.flush()


def recv_json(stream):
    """
    Read one newline-delimited JSON object from a buffered binary stream
    (``sock.makefile("rb")``). Blocks until a whole frame has arrived.
    Returns None when the stream ends cleanly between frames.
    """
    line = stream.readline(MAX_FRAME_SIZE + 1)
    if not line:
        return None
    if not line.endswith(b'\n'):
        if len(line) > MAX_FRAME_SIZE:
            raise MalformedMessage(f"Frame exceeds {MAX_FRAME_SIZE} bytes")
        raise MalformedMessage("Stream closed in the middle of a frame")
    try:
        obj = json.loads(line.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedMessage(f"Frame is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedMessage("Frame must hold a JSON object")
    return obj
