#!/usr/bin/env python
import io
import os
import re
import logging
from typing import Text, List, Iterator, Tuple, Sequence
import numpy
import pandas
import pysam

from cnseg import common
from cnseg.common import ErrorAction


class Keys:
    chromosome = "chr"
    start = "start"
    end = "end"
    copy_number = "cn"


class Default:
    ploidy = 2.0
    encoding = "utf-8"
    missing_values = frozenset({"NaN", "NA"})
    header_token = Keys.start
    row_budget_action = ErrorAction.RaiseException
    float_type = numpy.float64
    int_type = numpy.int64
    segment_columns = (Keys.chromosome, Keys.start, Keys.end, Keys.copy_number)


_token_separator = re.compile(r"[ \t,;]+")


class SignalFileError(OSError):
    """Signal matrix file is missing, unreadable or empty"""
    pass


class SignalFormatError(ValueError):
    """Signal matrix contents do not follow the chr, start, end, signal, ... layout"""
    pass


class ChromosomeSignal:
    """
    Dense signal matrix of one chromosome: one row per genomic bin, one column per track / sample. Values have the
    baseline ploidy subtracted, and missing cells hold the last valid value of their column.
    Both arrays are read-only once the block is built.
    """
    __slots__ = ("chromosome", "intervals", "matrix")

    def __init__(self, chromosome: str, intervals: numpy.ndarray, matrix: numpy.ndarray):
        if intervals.shape != (matrix.shape[0], 2):
            raise ValueError(
                f"{chromosome}: intervals shape {intervals.shape} does not match {matrix.shape[0]} matrix rows"
            )
        intervals.flags.writeable = False
        matrix.flags.writeable = False
        self.chromosome = chromosome
        self.intervals = intervals
        self.matrix = matrix

    @property
    def num_rows(self) -> int:
        return self.matrix.shape[0]

    @property
    def num_columns(self) -> int:
        return self.matrix.shape[1]

    @property
    def starts(self) -> numpy.ndarray:
        return self.intervals[:, 0]

    @property
    def ends(self) -> numpy.ndarray:
        return self.intervals[:, 1]

    def __repr__(self):
        return f"ChromosomeSignal({self.chromosome}, {self.num_rows}x{self.num_columns})"


class SignalBlockSize:
    """ Dimensions of one chromosome block, as discovered by the sizing pass """
    __slots__ = ("chromosome", "num_rows", "num_columns")

    def __init__(self, chromosome: str, num_rows: int = 0, num_columns: int = 0):
        self.chromosome = chromosome
        self.num_rows = num_rows
        self.num_columns = num_columns

    def __eq__(self, other):
        return isinstance(other, SignalBlockSize) and \
            (self.chromosome, self.num_rows, self.num_columns) == \
            (other.chromosome, other.num_rows, other.num_columns)

    def __repr__(self):
        return f"SignalBlockSize({self.chromosome}, {self.num_rows}x{self.num_columns})"


def tokenize_line(line: Text) -> List[str]:
    """ split line on any run of space, tab, comma or semicolon, dropping empty tokens """
    return [token for token in _token_separator.split(line.rstrip("\r\n")) if token]


def is_header(tokens: Sequence[str], header_token: str = Default.header_token) -> bool:
    return len(tokens) >= 2 and tokens[1] == header_token


def validate_signal_file(signal_file: Text):
    if not os.path.exists(signal_file):
        raise SignalFileError(f"Signal matrix is missing: {signal_file}")
    if not os.path.isfile(signal_file):
        raise SignalFileError(f"Signal matrix is not a regular file: {signal_file}")
    if os.path.getsize(signal_file) == 0:
        raise SignalFileError(f"Signal matrix is empty: {signal_file}")
    if not os.access(signal_file, os.R_OK):
        raise SignalFileError(f"Signal matrix is not readable: {signal_file}")


def iter_signal_lines(signal_file: Text, encoding: str = Default.encoding) -> Iterator[Text]:
    """
    Stream decoded lines from a (b)gzip-compressed signal matrix. htslib transparently reads bgzip, plain gzip and
    uncompressed text.
    """
    try:
        with pysam.BGZFile(signal_file, "rb") as f_in:
            for line in f_in:
                yield line.decode(encoding)
    except UnicodeDecodeError as decode_error:
        raise SignalFormatError(f"{signal_file} is not {encoding} text: {decode_error}") from decode_error


def iter_data_rows(lines: Iterator[Text]) -> Iterator[Tuple[int, List[str]]]:
    """
    Yield (line_number, tokens) for every data row: rows with at least chromosome, start and end that are not headers.
    Line numbers are 1-based.
    """
    for line_number, line in enumerate(lines, start=1):
        tokens = tokenize_line(line)
        if len(tokens) < 3 or is_header(tokens):
            continue
        yield line_number, tokens


def size_signal_blocks(lines: Iterator[Text]) -> List[SignalBlockSize]:
    """
    Sizing pass: find the row and column counts of each chromosome in order of discovery.
    Chromosomes are assumed to be contiguous, so a new name closes the previous block. The column count is taken from
    the first data row of each chromosome, and blocks with no value columns are dropped.
    """
    block_sizes = []
    block = None
    for __, tokens in iter_data_rows(lines):
        chromosome = tokens[0]
        if block is None or block.chromosome != chromosome:
            if block is not None and block.num_rows and block.num_columns:
                block_sizes.append(block)
            block = SignalBlockSize(chromosome, num_rows=0, num_columns=len(tokens) - 3)
        block.num_rows += 1
    if block is not None and block.num_rows and block.num_columns:
        block_sizes.append(block)
    return block_sizes


def _parse_coordinate(token: str) -> int:
    coordinate = int(token)
    if coordinate < 0:
        raise ValueError(f"negative genomic coordinate {token}")
    return coordinate


def _check_row_budget(block_size: SignalBlockSize, num_filled: int, row_budget_action: ErrorAction, source: str):
    if num_filled < block_size.num_rows:
        row_budget_action.handle_error(
            f"{source}: {block_size.chromosome} has {num_filled} data rows but {block_size.num_rows} were expected; "
            f"the remaining rows are left at 0",
            exception_type=SignalFormatError
        )


def fill_signal_blocks(
        lines: Iterator[Text],
        block_sizes: Sequence[SignalBlockSize],
        ploidy: float = Default.ploidy,
        row_budget_action: ErrorAction = Default.row_budget_action,
        missing_values: frozenset = Default.missing_values,
        source: str = "signal matrix"
) -> List[ChromosomeSignal]:
    f"""
    Fill pass: parse intervals and values into one pre-sized matrix per block.
    Args:
        lines: Iterator[Text]
            Lines of the signal matrix, the same ones passed to size_signal_blocks
        block_sizes: Sequence[SignalBlockSize]
            Output of the sizing pass
        ploidy: float (Default={Default.ploidy})
            Baseline subtracted from every non-missing value
        row_budget_action: ErrorAction (Default={Default.row_budget_action})
            What to do when a block receives fewer rows than the sizing pass predicted. Unless an exception is raised,
            the unfilled rows stay at 0.
        missing_values: frozenset (Default={Default.missing_values})
            Case-sensitive tokens replaced by the last valid value of the column (0 before any value is seen)
        source: str
            Name of the input, for error messages
    Returns:
        chromosome_signals: List[ChromosomeSignal]
            One matrix per block, in order of discovery
    """
    chromosome_signals = []
    block_iter = iter(block_sizes)
    block_size, intervals, matrix, last_valid = None, None, None, None
    run_chromosome = None
    row = 0

    def _close_block():
        if block_size is not None:
            _check_row_budget(block_size, row, row_budget_action, source)
            chromosome_signals.append(ChromosomeSignal(block_size.chromosome, intervals, matrix))

    for line_number, tokens in iter_data_rows(lines):
        chromosome = tokens[0]
        if chromosome != run_chromosome:
            _close_block()
            run_chromosome = chromosome
            row = 0
            if len(tokens) == 3:
                # chromosome without value columns was not sized, skip all of its rows
                block_size = None
                continue
            block_size = next(block_iter, None)
            if block_size is None or block_size.chromosome != chromosome:
                raise SignalFormatError(
                    f"{source}:{line_number}: unexpected chromosome {chromosome}; input changed while it was read"
                )
            intervals = numpy.zeros((block_size.num_rows, 2), dtype=Default.int_type)
            matrix = numpy.zeros((block_size.num_rows, block_size.num_columns), dtype=Default.float_type)
            last_valid = numpy.zeros(block_size.num_columns, dtype=Default.float_type)
        if block_size is None:
            continue
        if row >= block_size.num_rows:
            raise SignalFormatError(
                f"{source}:{line_number}: more than {block_size.num_rows} rows for {chromosome}; "
                "input changed while it was read"
            )
        values = tokens[3:]
        if len(values) != block_size.num_columns:
            raise SignalFormatError(
                f"{source}:{line_number}: {len(values)} signal columns for {chromosome}, expected "
                f"{block_size.num_columns} (format is chr, start, end, signal, ...)"
            )
        try:
            intervals[row, 0] = _parse_coordinate(tokens[1])
            intervals[row, 1] = _parse_coordinate(tokens[2])
            for column, value in enumerate(values):
                if value in missing_values:
                    matrix[row, column] = last_valid[column]
                else:
                    matrix[row, column] = float(value) - ploidy
                    last_valid[column] = matrix[row, column]
        except ValueError as value_error:
            format_error = SignalFormatError(str(value_error))
            common.add_exception_context(format_error, f"{source}:{line_number}")
            raise format_error from value_error
        row += 1
    _close_block()
    # chromosomes that never showed up on this pass get entirely default-valued matrices
    for block_size in block_iter:
        _check_row_budget(block_size, 0, row_budget_action, source)
        chromosome_signals.append(
            ChromosomeSignal(
                block_size.chromosome,
                numpy.zeros((block_size.num_rows, 2), dtype=Default.int_type),
                numpy.zeros((block_size.num_rows, block_size.num_columns), dtype=Default.float_type)
            )
        )
    return chromosome_signals


def load_signal_matrix(
        signal_file: Text,
        ploidy: float = Default.ploidy,
        row_budget_action: ErrorAction = Default.row_budget_action,
        encoding: str = Default.encoding
) -> List[ChromosomeSignal]:
    f"""
    Load a compressed chr, start, end, signal, ... table into one ChromosomeSignal per chromosome.
       - fields may be separated by any mix of space, tab, comma or semicolon
       - rows whose second field is "{Default.header_token}" are headers and are skipped wherever they occur
       - {' and '.join(sorted(Default.missing_values))} are replaced by the previous valid value of the same column
       - ploidy is subtracted from all other values
    The file is streamed twice: once to size each chromosome matrix, then to fill it.
    Args:
        signal_file: Text
            Path to signal matrix
        ploidy: float (Default={Default.ploidy})
            Baseline ploidy
        row_budget_action: ErrorAction (Default={Default.row_budget_action})
            Handling of chromosomes that receive fewer rows on the second pass than on the first
        encoding: str (Default={Default.encoding})
            Text encoding of the file
    Returns:
        chromosome_signals: List[ChromosomeSignal]
            Per-chromosome matrices in order of discovery
    """
    validate_signal_file(signal_file)
    try:
        block_sizes = size_signal_blocks(iter_signal_lines(signal_file, encoding=encoding))
    except OSError as os_error:
        raise SignalFileError(f"Unable to read signal matrix {signal_file}: {os_error}") from os_error
    if not block_sizes:
        raise SignalFormatError(f"{signal_file}: Signal matrix format is chr, start, end, signal, ...")
    for block_size in block_sizes:
        logging.info(
            f"Matrix dimensions for {block_size.chromosome} are: {block_size.num_rows}x{block_size.num_columns}"
        )
    try:
        return fill_signal_blocks(
            iter_signal_lines(signal_file, encoding=encoding), block_sizes, ploidy=ploidy,
            row_budget_action=row_budget_action, source=signal_file
        )
    except OSError as os_error:
        raise SignalFileError(f"Unable to read signal matrix {signal_file}: {os_error}") from os_error


def pandas_to_tsv(
        data_file: Text,
        df: pandas.DataFrame,
        encoding: str = Default.encoding
):
    """
    Save pandas DataFrame into tab-delimited bgzipped file, with a header of column names
    """
    with pysam.BGZFile(data_file, "wb") as f_out:
        f_out.write(df.to_csv(sep='\t', index=False, header=True).encode(encoding))


def write_segments(
        data_file: Text,
        segments: pandas.DataFrame,
        encoding: str = Default.encoding
):
    """
    Write final segments as bgzipped chr, start, end, cn table
    """
    missing_columns = [column for column in Default.segment_columns if column not in segments.columns]
    if missing_columns:
        raise ValueError(f"segments table is missing columns {','.join(missing_columns)}")
    pandas_to_tsv(data_file, segments.loc[:, list(Default.segment_columns)], encoding=encoding)


def write_smoothed_bins(
        data_file: Text,
        smoothed_bins: pandas.DataFrame,
        encoding: str = Default.encoding
):
    """
    Write per-bin smoothed signal: chr, start, end followed by one cn column per input track
    """
    pandas_to_tsv(data_file, smoothed_bins, encoding=encoding)


def segments_from_tsv(data_file: Text, encoding: str = Default.encoding) -> pandas.DataFrame:
    """ Load a table written by write_segments or write_smoothed_bins """
    with pysam.BGZFile(data_file, "rb") as f_in:
        text = f_in.read().decode(encoding)
    return pandas.read_csv(
        io.StringIO(text), sep='\t', dtype={Keys.chromosome: str}, engine='c'
    )
