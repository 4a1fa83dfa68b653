#!/usr/bin/env python

import sys
import logging
import argparse
from dataclasses import dataclass
from typing import List, Text, Optional
import pandas
from tqdm.auto import tqdm

from cnseg import changepoints, segment_stats, signal_io
from cnseg.common import ErrorAction
from cnseg.segment_stats import SmoothSignal, UndoBreaksMode
from cnseg.signal_io import ChromosomeSignal, Keys


class Default:
    max_change_points = changepoints.Default.max_change_points
    ploidy = signal_io.Default.ploidy
    epsilon = changepoints.Default.epsilon
    dp_threshold = changepoints.Default.dp_threshold
    outfile = "segment.gz"
    undo_breaks = UndoBreaksMode.Off
    undo_breaks_scale = segment_stats.Default.undo_breaks_scale
    row_budget_action = signal_io.Default.row_budget_action
    log_level = "INFO"
    log_progress = True
    bin_column_prefix = "cn_"


@dataclass(frozen=True)
class SegmentConfig:
    max_change_points: int = Default.max_change_points
    ploidy: float = Default.ploidy
    epsilon: float = Default.epsilon
    dp_threshold: float = Default.dp_threshold
    undo_breaks: UndoBreaksMode = Default.undo_breaks
    undo_breaks_scale: float = Default.undo_breaks_scale
    row_budget_action: ErrorAction = Default.row_budget_action


def segment_chromosome(chromosome_signal: ChromosomeSignal, config: Optional[SegmentConfig] = None) -> SmoothSignal:
    """
    Segment one chromosome: changepoint detection and best-k selection, optional merging of segments that are not
    significantly different, then median smoothing.
    """
    config = SegmentConfig() if config is None else config
    selected_jumps = changepoints.detect_and_select(
        chromosome_signal.matrix, max_change_points=config.max_change_points, epsilon=config.epsilon,
        dp_threshold=config.dp_threshold
    )
    logging.debug(f"{chromosome_signal.chromosome}: {len(selected_jumps)} selected breakpoints")
    final_jumps = config.undo_breaks.apply(chromosome_signal.matrix, selected_jumps, scale=config.undo_breaks_scale)
    if config.undo_breaks != UndoBreaksMode.Off:
        logging.debug(f"{chromosome_signal.chromosome}: {len(final_jumps)} breakpoints after undoing breaks")
    return segment_stats.smooth_signal(chromosome_signal.matrix, final_jumps)


def summarize_segments(
        chromosome_signal: ChromosomeSignal,
        smoothed: SmoothSignal,
        ploidy: float = Default.ploidy
) -> pandas.DataFrame:
    """
    One row per segment: chromosome, genomic start of its first bin, genomic end of its last bin, and the mean over
    columns of the per-column medians with the baseline ploidy added back.
    """
    return pandas.DataFrame(
        {
            Keys.chromosome: chromosome_signal.chromosome,
            Keys.start: chromosome_signal.starts[smoothed.segment_starts],
            Keys.end: chromosome_signal.ends[smoothed.jumps],
            Keys.copy_number: smoothed.smooth.mean(axis=1) + ploidy
        },
        columns=[Keys.chromosome, Keys.start, Keys.end, Keys.copy_number]
    )


def smoothed_bins_table(
        chromosome_signal: ChromosomeSignal,
        smoothed: SmoothSignal,
        ploidy: float = Default.ploidy
) -> pandas.DataFrame:
    """ per-bin smoothed signal of every column, with the baseline ploidy added back """
    expanded = segment_stats.expand_piecewise_constant(smoothed) + ploidy
    bins = pandas.DataFrame(
        {
            Keys.chromosome: chromosome_signal.chromosome,
            Keys.start: chromosome_signal.starts,
            Keys.end: chromosome_signal.ends
        },
        columns=[Keys.chromosome, Keys.start, Keys.end]
    )
    for column in range(expanded.shape[1]):
        bins[f"{Default.bin_column_prefix}{column + 1}"] = expanded[:, column]
    return bins


def segment_signal_matrix(
        signal_file: Text,
        out_file: Text = Default.outfile,
        config: Optional[SegmentConfig] = None,
        smoothed_bins_file: Optional[Text] = None,
        log_progress: bool = Default.log_progress
) -> pandas.DataFrame:
    f"""
    Segment every chromosome of a signal matrix and write the segments as a bgzipped chr, start, end, cn table.
    The whole input is parsed before any output is created, so a malformed input leaves no output behind.
    Chromosomes are processed and written in the order they appear in the input.
    Args:
        signal_file: Text
            compressed chr, start, end, signal, ... table
        out_file: Text (Default={Default.outfile})
            path for the segments table
        config: SegmentConfig or None (Default=None)
            segmentation parameters; if None, use SegmentConfig defaults
        smoothed_bins_file: Text or None (Default=None)
            if not None, also write the per-bin smoothed signal here
        log_progress: bool (Default={Default.log_progress})
            display a progress bar over chromosomes
    Returns:
        segments: pandas.DataFrame
            the table that was written to out_file
    """
    config = SegmentConfig() if config is None else config
    chromosome_signals = signal_io.load_signal_matrix(
        signal_file, ploidy=config.ploidy, row_budget_action=config.row_budget_action
    )
    segment_tables = []
    bin_tables = []
    for chromosome_signal in tqdm(chromosome_signals, desc="Segmenting", unit="chromosome", file=sys.stderr,
                                  disable=not log_progress):
        smoothed = segment_chromosome(chromosome_signal, config)
        segment_tables.append(summarize_segments(chromosome_signal, smoothed, ploidy=config.ploidy))
        if smoothed_bins_file is not None:
            bin_tables.append(smoothed_bins_table(chromosome_signal, smoothed, ploidy=config.ploidy))
    segments = pandas.concat(segment_tables, ignore_index=True)
    signal_io.write_segments(out_file, segments)
    logging.info(f"Wrote {len(segments)} segments on {len(chromosome_signals)} chromosomes to {out_file}")
    if smoothed_bins_file is not None:
        signal_io.write_smoothed_bins(smoothed_bins_file, pandas.concat(bin_tables, ignore_index=True))
        logging.info(f"Wrote smoothed signal to {smoothed_bins_file}")
    return segments


def _error_message(error: Exception) -> str:
    return ": ".join(str(arg) for arg in error.args) if error.args else type(error).__name__


def __parse_arguments(argv: List[Text]) -> argparse.Namespace:
    # noinspection PyTypeChecker
    parser = argparse.ArgumentParser(
        description="Segment a binned multi-track signal matrix (chr, start, end, signal, ...) into piecewise-constant "
                    "copy-number segments",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        prog=argv[0]
    )
    parser.add_argument("signal_file", type=str, help="Compressed signal matrix: chr, start, end, signal, ...")
    parser.add_argument("--kchange", "-k", type=int, default=Default.max_change_points,
                        help="change points per chromosome")
    parser.add_argument("--ploidy", "-y", type=float, default=Default.ploidy, help="baseline ploidy")
    parser.add_argument("--epsilon", "-e", type=float, default=Default.epsilon, help="epsilon error")
    parser.add_argument("--dp-threshold", "-d", type=float, default=Default.dp_threshold, help="DP threshold")
    parser.add_argument("--outfile", "-o", type=str, default=Default.outfile, help="output file")
    # noinspection PyTypeChecker
    parser.add_argument("--undo-breaks", type=UndoBreaksMode, choices=list(UndoBreaksMode),
                        default=Default.undo_breaks,
                        help="Merge adjacent segments that are not significantly different: never, with a single pass, "
                             "or repeatedly until no more breakpoints are removed")
    parser.add_argument("--undo-breaks-scale", type=float, default=Default.undo_breaks_scale,
                        help="Breakpoints are kept if the mean difference exceeds this many standard deviations")
    # noinspection PyTypeChecker
    parser.add_argument("--row-budget-action", type=ErrorAction.from_name, choices=list(ErrorAction),
                        default=Default.row_budget_action,
                        help="What to do if a chromosome has fewer rows on the second read of the input than on the "
                             "first")
    parser.add_argument("--smoothed-bins", type=str, default=None,
                        help="If specified, also write the per-bin smoothed signal to this file")
    parser.add_argument("-l", "--log-level", required=False, default=Default.log_level,
                        help="Specify level of logging information, ie. info, warning, error (not case-sensitive).")
    parser.add_argument("--no-progress", action="store_true", help="Do not display progress bar")

    if len(argv) <= 1:
        # the signal matrix is required: show usage and fail like any other missing input
        parser.print_help(sys.stderr)
        sys.exit(1)
    parsed_arguments = parser.parse_args(argv[1:])
    if parsed_arguments.kchange < 0:
        parser.error("--kchange must be non-negative")
    return parsed_arguments


def main(argv: Optional[List[Text]] = None) -> Optional[pandas.DataFrame]:
    argv = sys.argv if argv is None else argv
    arguments = __parse_arguments(argv)
    logging.basicConfig(format='[%(levelname)s:%(asctime)s] %(message)s',
                        level=getattr(logging, arguments.log_level.upper()))
    logging.info(" ".join(argv))
    config = SegmentConfig(
        max_change_points=arguments.kchange,
        ploidy=arguments.ploidy,
        epsilon=arguments.epsilon,
        dp_threshold=arguments.dp_threshold,
        undo_breaks=arguments.undo_breaks,
        undo_breaks_scale=arguments.undo_breaks_scale,
        row_budget_action=arguments.row_budget_action
    )
    try:
        segments = segment_signal_matrix(
            arguments.signal_file,
            out_file=arguments.outfile,
            config=config,
            smoothed_bins_file=arguments.smoothed_bins,
            log_progress=not arguments.no_progress
        )
    except (signal_io.SignalFileError, signal_io.SignalFormatError) as error:
        print(_error_message(error), file=sys.stderr)
        sys.exit(1)
    logging.info("Done.")
    return segments


if __name__ == "__main__":
    main()
