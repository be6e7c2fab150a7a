from couchstream.feed.reader import ChangeFeedReader

__all__ = ["ChangeFeedReader"]
