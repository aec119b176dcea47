# File: gphik/utils/persistence.py

"""
Tagged text framing used to store and restore GPHIK models.

Every field is wrapped in ``<name>`` / ``</name>`` markers, composite objects
nest their own blocks, collections carry a ``size:`` counter and optional
blocks start with ``NULL`` or ``NOTNULL``. Tokens are whitespace separated,
floats are written with ``repr`` so a restore reproduces them bit for bit.
"""

from typing import IO, Iterator, List, Optional

import numpy as np

from ..core.exceptions import CorruptStateError

NULL_MARKER = 'NULL'
NOT_NULL_MARKER = 'NOTNULL'
SIZE_MARKER = 'size:'


def create_start_tag(name: str) -> str:
    return f"<{name}>"


def create_end_tag(name: str) -> str:
    return f"</{name}>"


def is_start_tag(token: str, name: Optional[str] = None) -> bool:
    if not (token.startswith('<') and token.endswith('>')) or token.startswith('</'):
        return False
    return name is None or token == create_start_tag(name)


def is_end_tag(token: str, name: Optional[str] = None) -> bool:
    if not (token.startswith('</') and token.endswith('>')):
        return False
    return name is None or token == create_end_tag(name)


def remove_start_tag(token: str) -> str:
    if not is_start_tag(token):
        raise CorruptStateError(f"Expected a start tag, found '{token}'",
                                operation='restore')
    return token[1:-1]


def _format_float(value: float) -> str:
    return repr(float(value))


class TagWriter:
    """Writes tagged blocks to a text stream"""

    def __init__(self, stream: IO[str]):
        self.stream = stream

    def start(self, name: str) -> None:
        self.stream.write(create_start_tag(name) + '\n')

    def end(self, name: str) -> None:
        self.stream.write(create_end_tag(name) + '\n')

    def token(self, value) -> None:
        self.stream.write(f"{value}\n")

    def write_bool(self, name: str, value: bool) -> None:
        self.start(name)
        self.token(int(bool(value)))
        self.end(name)

    def write_int(self, name: str, value: int) -> None:
        self.start(name)
        self.token(int(value))
        self.end(name)

    def write_float(self, name: str, value: float) -> None:
        self.start(name)
        self.token(_format_float(value))
        self.end(name)

    def write_str(self, name: str, value: str) -> None:
        if not value or any(c.isspace() for c in value):
            raise ValueError(f"Field '{name}' can not hold the value '{value}'")
        self.start(name)
        self.token(value)
        self.end(name)

    def vector(self, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=np.float64).ravel()
        self.stream.write(f"{SIZE_MARKER} {len(values)}\n")
        if len(values) > 0:
            self.stream.write(' '.join(_format_float(v) for v in values) + '\n')

    def matrix(self, values: np.ndarray) -> None:
        values = np.atleast_2d(np.asarray(values, dtype=np.float64))
        rows, cols = values.shape
        self.stream.write(f"rows: {rows} cols: {cols}\n")
        for row in values:
            if cols > 0:
                self.stream.write(' '.join(_format_float(v) for v in row) + '\n')

    def write_vector(self, name: str, values: np.ndarray) -> None:
        self.start(name)
        self.vector(values)
        self.end(name)

    def write_matrix(self, name: str, values: np.ndarray) -> None:
        self.start(name)
        self.matrix(values)
        self.end(name)


class TagReader:
    """Token reader for streams produced by :class:`TagWriter`"""

    def __init__(self, stream: IO[str]):
        self._tokens: List[str] = stream.read().split()
        self._position = 0

    @property
    def exhausted(self) -> bool:
        return self._position >= len(self._tokens)

    def peek(self) -> str:
        if self.exhausted:
            raise CorruptStateError("Unexpected end of stream", operation='restore')
        return self._tokens[self._position]

    def next_token(self) -> str:
        token = self.peek()
        self._position += 1
        return token

    def expect_start(self, name: str) -> None:
        token = self.next_token()
        if not is_start_tag(token, name):
            raise CorruptStateError(f"Start tag '{token}' does not match",
                                    operation='restore', field=name)

    def expect_end(self, name: str) -> None:
        token = self.next_token()
        if not is_end_tag(token, name):
            raise CorruptStateError(f"End tag '{token}' does not match",
                                    operation='restore', field=name)

    def blocks(self, name: str) -> Iterator[str]:
        """
        Iterate over the field names inside the block ``name``.

        The opening tag must already have been consumed. The caller reads the
        field content and its end tag for each yielded name; iteration stops
        at ``</name>``.
        """
        while True:
            token = self.next_token()
            if is_end_tag(token, name):
                return
            yield remove_start_tag(token)

    def read_int(self) -> int:
        token = self.next_token()
        try:
            return int(token)
        except ValueError as exc:
            raise CorruptStateError(f"Expected an integer, found '{token}'",
                                    operation='restore') from exc

    def read_float(self) -> float:
        token = self.next_token()
        try:
            return float(token)
        except ValueError as exc:
            raise CorruptStateError(f"Expected a float, found '{token}'",
                                    operation='restore') from exc

    def read_bool(self) -> bool:
        return bool(self.read_int())

    def read_str(self) -> str:
        return self.next_token()

    def read_marker(self, expected: str) -> None:
        token = self.next_token()
        if token != expected:
            raise CorruptStateError(f"Expected '{expected}', found '{token}'",
                                    operation='restore')

    def read_size(self) -> int:
        self.read_marker(SIZE_MARKER)
        return self.read_int()

    def read_is_not_null(self) -> bool:
        token = self.next_token()
        if token == NOT_NULL_MARKER:
            return True
        if token == NULL_MARKER:
            return False
        raise CorruptStateError(f"Expected NULL or NOTNULL, found '{token}'",
                                operation='restore')

    def vector(self) -> np.ndarray:
        size = self.read_size()
        return np.array([self.read_float() for _ in range(size)], dtype=np.float64)

    def matrix(self) -> np.ndarray:
        self.read_marker('rows:')
        rows = self.read_int()
        self.read_marker('cols:')
        cols = self.read_int()
        values = np.array([self.read_float() for _ in range(rows * cols)], dtype=np.float64)
        return values.reshape(rows, cols)

    # Field readers: content followed by the end tag of the field

    def field_int(self, name: str) -> int:
        value = self.read_int()
        self.expect_end(name)
        return value

    def field_float(self, name: str) -> float:
        value = self.read_float()
        self.expect_end(name)
        return value

    def field_bool(self, name: str) -> bool:
        value = self.read_bool()
        self.expect_end(name)
        return value

    def field_str(self, name: str) -> str:
        value = self.read_str()
        self.expect_end(name)
        return value

    def field_vector(self, name: str) -> np.ndarray:
        value = self.vector()
        self.expect_end(name)
        return value

    def field_matrix(self, name: str) -> np.ndarray:
        value = self.matrix()
        self.expect_end(name)
        return value
