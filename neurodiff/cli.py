"""
Command-line interface for neurodiff
"""

import sys
from pathlib import Path
from typing import Optional

import click

from . import __version__, check_dependencies, get_info
from .config import Config, get_default_config, load_config, save_config
from .core import NeuroDiffAnalysis
from .dataset import load_expression_dataset
from .exceptions import NeuroDiffError
from .utils import setup_logging


# Global context for CLI
class CLIContext:
    def __init__(self):
        self.config_file: Optional[Path] = None
        self.config: Optional[Config] = None
        self.verbose: bool = False
        self.quiet: bool = False

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.verbose else "WARNING" if self.quiet else "INFO"


@click.group()
@click.version_option(__version__)
@click.option(
    "--config", "-c", type=click.Path(exists=True), help="Configuration file path"
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Enable quiet mode (minimal output)")
@click.pass_context
def main(ctx, config, verbose, quiet):
    """
    neurodiff: differential expression and enrichment for neuron populations

    neurodiff takes raw RNA-seq counts with sample and gene metadata through
    expressed gene filtering, normalization, QC diagnostics, negative
    binomial differential expression and pathway enrichment.
    """
    cli_ctx = CLIContext()
    cli_ctx.verbose = verbose
    cli_ctx.quiet = quiet

    setup_logging(level=cli_ctx.log_level)

    if config:
        cli_ctx.config_file = Path(config)
        cli_ctx.config = load_config(cli_ctx.config_file)

    ctx.obj = cli_ctx


@main.command()
def info():
    """Show neurodiff package information"""

    info_data = get_info()

    click.echo("=" * 50)
    click.echo(f"neurodiff v{info_data['version']}")
    click.echo("=" * 50)
    click.echo(f"Description: {info_data['description']}")
    click.echo(f"Python version: {info_data['python_version']}")
    click.echo()

    click.echo("Available modules:")
    for module in info_data["modules"]:
        click.echo(f"  - {module}")
    click.echo()

    deps = check_dependencies()
    click.echo("Dependency status:")
    for dep, available in deps.items():
        status = "✓" if available else "✗"
        click.echo(f"  {status} {dep}")


@main.command()
@click.argument("output_file", type=click.Path())
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["yaml", "json"]),
    default="yaml",
    help="Output format for configuration file",
)
def init_config(output_file, output_format):
    """Initialize a new neurodiff configuration file"""

    output_path = Path(output_file)
    if output_format == "json" and output_path.suffix.lower() != ".json":
        output_path = output_path.with_suffix(".json")

    if output_path.exists():
        if not click.confirm(f"File {output_path} already exists. Overwrite?"):
            click.echo("Configuration initialization cancelled.")
            return

    try:
        save_config(get_default_config(), output_path)
    except OSError as e:
        click.echo(f"Error creating configuration file: {e}", err=True)
        sys.exit(1)

    click.echo(f"Configuration file created: {output_path}")
    click.echo("Set design.reference_level before running the analysis.")


@main.command()
@click.option(
    "--dataset",
    "-d",
    "dataset_dir",
    type=click.Path(exists=True, file_okay=False),
    help="Dataset directory (default: input_dir from the configuration)",
)
@click.option("--output", "-o", type=click.Path(), help="Output directory")
@click.option(
    "--exclude",
    "-x",
    multiple=True,
    help="Sample to exclude (repeatable; overrides exclude_samples)",
)
@click.option("--skip-enrichment", is_flag=True, help="Stop after gene list extraction")
@click.pass_context
def run(ctx, dataset_dir, output, exclude, skip_enrichment):
    """Run the complete neurodiff analysis pipeline"""

    cli_ctx = ctx.obj

    if cli_ctx.config is None:
        click.echo(
            "Error: No configuration file provided. Use --config option or 'neurodiff init-config'",
            err=True,
        )
        sys.exit(1)

    config = cli_ctx.config
    if output:
        config.output_dir = str(output)
    if not config.output_dir:
        click.echo("Error: No output directory. Use --output or set output_dir", err=True)
        sys.exit(1)

    dataset_dir = dataset_dir or config.input_dir
    if not dataset_dir:
        click.echo("Error: No dataset directory. Use --dataset or set input_dir", err=True)
        sys.exit(1)

    try:
        analysis = NeuroDiffAnalysis(config=config, log_level=cli_ctx.log_level)
        dataset = load_expression_dataset(dataset_dir)

        click.echo("Starting neurodiff analysis pipeline...")
        result = analysis.run(
            dataset,
            exclude_samples=list(exclude) if exclude else None,
            run_enrichment=not skip_enrichment,
        )
    except NeuroDiffError as e:
        click.echo(f"Pipeline execution failed: {e}", err=True)
        if cli_ctx.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)

    summary = result.differential.summary()
    click.echo(f"Analysis completed. Results saved to: {config.output_dir}")
    click.echo(
        f"  {summary.n_significant} genes with padj < {summary.alpha} "
        f"({summary.n_up} up, {summary.n_down} down) of {summary.n_tested} tested"
    )
    for name, gene_list in result.gene_lists.items():
        click.echo(f"  {name}: {len(gene_list)} genes")
    for name, enrichment in result.enrichment.items():
        if enrichment.unavailable:
            click.echo(f"  ✗ {name}: unavailable databases {', '.join(enrichment.unavailable)}")

    total_time = analysis.get_execution_times().get("total", 0)
    click.echo(f"Total execution time: {total_time:.2f} seconds")


if __name__ == "__main__":
    main()
