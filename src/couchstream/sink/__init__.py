from couchstream.sink.writer import SinkWriter

__all__ = ["SinkWriter"]
