import argparse
import logging
import time

import pandas as pd

from tumor_deseq import AnalysisConfig, CountDataSet, load_json_config
from tumor_deseq.pipeline import run_analysis, write_outputs

logger = logging.getLogger("run_tumor_normal")


def load_data(counts_path, metadata_path, sample_col):
    logger.info("Loading %s...", counts_path)
    counts_df = pd.read_csv(counts_path, index_col=0)
    logger.info("Loading %s...", metadata_path)
    metadata_df = pd.read_csv(metadata_path)
    if sample_col not in metadata_df.columns:
        # metadata already indexed by sample in its first column
        metadata_df = pd.read_csv(metadata_path, index_col=0)
        metadata_df = metadata_df.rename_axis(sample_col).reset_index()
    return counts_df, metadata_df


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Tumor-vs-normal differential expression and sample clustering")
    parser.add_argument("counts", help="CSV of raw counts, genes x samples")
    parser.add_argument("metadata", help="CSV of sample metadata")
    parser.add_argument("--sample-col", default="barcode",
                        help="metadata column holding the sample identifiers")
    parser.add_argument("--config", help="JSON file with AnalysisConfig settings")
    parser.add_argument("--gene-names", help="CSV mapping accession to gene name")
    parser.add_argument("--outdir", default="results", help="output directory")
    parser.add_argument("--n-jobs", type=int, default=None,
                        help="override n_jobs from the config")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_json_config(args.config) if args.config else AnalysisConfig()
    if args.n_jobs is not None:
        settings = config.to_dict()
        settings["n_jobs"] = args.n_jobs
        config = AnalysisConfig.from_dict(settings)

    counts_df, metadata_df = load_data(args.counts, args.metadata, args.sample_col)
    gene_names = None
    if args.gene_names:
        gene_names = pd.read_csv(args.gene_names, index_col=0).iloc[:, 0]

    dataset = CountDataSet.from_metadata(
        counts_df, metadata_df, sample_col=args.sample_col,
        condition_col=config.condition_col,
        reference_level=config.reference_level,
        treatment_level=config.treatment_level,
        gene_names=gene_names)

    start_time = time.time()
    result = run_analysis(dataset, config)
    logger.info("Done in %.1f seconds.", time.time() - start_time)

    write_outputs(result, args.outdir, percent_decimals=config.percent_decimals)


if __name__ == "__main__":
    main()
