import sys
import types
import warnings
from enum import Enum
from typing import Union, List, Tuple
import numpy
import pandas


Vector = Union[List, pandas.Series, numpy.ndarray]


# monkey-patch warnings to just display the warning
# noinspection PyUnusedLocal
def _showwarning(message, category=UserWarning, filename='', lineno=-1, file='', line=''):
    message = f"\n{category.__name__}  {filename}:{lineno}  {message}" if lineno > 0 \
        else f"\n{category.__name__}  {message}"
    print(message, file=sys.stderr)
    return message


warnings.showwarning = _showwarning
warnings.formatwarning = _showwarning


class ErrorAction(Enum):
    """ Simple Enum to control behavior when a problem is identified """
    Ignore = 0
    Warn = 1
    RaiseException = 2

    @classmethod
    def from_name(cls, name: str) -> "ErrorAction":
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"Invalid ErrorAction: {name} (options: {','.join(cls.choices())})")

    @classmethod
    def choices(cls) -> Tuple[str, ...]:
        return tuple(action.name for action in cls)

    def __str__(self):
        return self.name

    def handle_error(self, message: str, exception_type: type = ValueError):
        if self == ErrorAction.Warn:
            warnings.warn(message, stacklevel=2)
        elif self == ErrorAction.RaiseException:
            # remove last frame from traceback so that the exception points to the actual problem, and not this
            # wrapper
            # noinspection PyUnresolvedReferences,PyProtectedMember
            back_frame = sys._getframe(1)
            back_traceback = types.TracebackType(tb_next=None, tb_frame=back_frame, tb_lasti=back_frame.f_lasti,
                                                 tb_lineno=back_frame.f_lineno)
            raise exception_type(message).with_traceback(back_traceback)


def add_exception_context(exception: Exception, context: str):
    """
    Add additional context to a caught exception
    Args:
        exception: Exception
            Exception that was caught
        context: str
            Extra info to add to exception.
    Returns:
        exception: Exception
            Original exeption with annotated context.
    """
    if len(exception.args) == 1 and type(exception.args[0]) is str:
        exception.args = (context, exception.args[0])
    else:
        exception.args = (context,) + exception.args


def drop_consecutive_duplicates(values: Vector) -> numpy.ndarray:
    """
    Keep one value from every run of consecutive, exactly-equal values.
    Args:
        values: Vector
            Values in their original (genomic) order
    Returns:
        collapsed: numpy.ndarray
            Values with immediate repeats removed, order preserved
    """
    values = numpy.asarray(values)
    if values.size == 0:
        return values
    keep = numpy.empty(values.shape, dtype=bool)
    keep[0] = True
    numpy.not_equal(values[1:], values[:-1], out=keep[1:])
    return values[keep]
