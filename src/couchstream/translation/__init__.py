from couchstream.translation.translator import Translator, is_design_document

__all__ = ["Translator", "is_design_document"]
