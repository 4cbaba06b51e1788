class FormFillError(Exception):
    """Base class for failures while filling the TOP form."""


class ConfigurationError(FormFillError):
    """A required resource (template PDF, mapping file) is absent or unreadable."""


class MappingParseError(ConfigurationError):
    """The mapping document is not valid structured data."""


class FontLoadError(FormFillError):
    """The optional embedded font could not be loaded. Always recovered."""


class RenderError(FormFillError):
    """A spot could not be drawn (bad page index, malformed geometry)."""
