from .gen import GENERATOR_VERSION as __version__
from .gen import ParseError, render_file, to_snake_case, transform_source
from .runtime import Err, Ok, Outcome

__all__ = [
    "Err",
    "Ok",
    "Outcome",
    "ParseError",
    "render_file",
    "to_snake_case",
    "transform_source",
    "__version__",
]
