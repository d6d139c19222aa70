"""Click CLI for dissmap: site dissimilarity and zeta-diversity mapping."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from dissmap import __version__

from .io import load_environment, load_site_table

logger = logging.getLogger("dissmap")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _site_options(f):
    f = click.option("--y-col", default="y", show_default=True, help="Latitude column")(f)
    f = click.option("--x-col", default="x", show_default=True, help="Longitude column")(f)
    f = click.option("--site-col", default="grid_id", show_default=True, help="Site identifier column")(f)
    f = click.option("--sites", "-s", required=True, type=click.Path(exists=True), help="Site-by-species table (CSV/TSV)")(f)
    return f


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """dissmap: community dissimilarity and zeta-diversity mapping."""
    _setup_logging(verbose)


@main.command("metrics")
def list_metrics_cmd() -> None:
    """List the registered site metrics."""
    from .metrics import list_metrics

    for m in list_metrics():
        click.echo(f"{m.name:<22} min_order={m.min_order}  {m.description}")


@main.command()
@_site_options
@click.option("--metric", "-m", required=True, help="Metric name (see `dissmap metrics`)")
@click.option("--order", "-k", default=2, show_default=True, help="Sites per combination")
@click.option("--sample-no", default=None, type=int, help="Max combinations to sample")
@click.option("--ordered", is_flag=True, help="Evaluate every site as focal site")
@click.option("--jobs", "-j", default=1, show_default=True, help="Parallel workers")
@click.option("--output", "-o", required=True, type=click.Path(), help="Output CSV")
def orderwise(sites: str, site_col: str, x_col: str, y_col: str, metric: str, order: int, sample_no: int | None, ordered: bool, jobs: int, output: str) -> None:
    """Compute a metric over all site combinations of one order."""
    from .orderwise import compute_orderwise

    table = load_site_table(sites, site_col=site_col, x_col=x_col, y_col=y_col)
    try:
        result = compute_orderwise(
            table, metric, order=order, sample_no=sample_no, ordered=ordered,
            n_jobs=jobs, site_col=site_col,
        )
    except KeyError as e:
        raise click.BadParameter(str(e.args[0]), param_hint="--metric") from None
    except ValueError as e:
        raise click.UsageError(str(e)) from None
    Path(output).parent.mkdir(parents=True, exist_ok=True)
    result.to_csv(output, index=False)
    click.echo(f"{len(result)} {metric} values written to {output}")


@main.command()
@_site_options
@click.option("--method", type=click.Choice(["geodesic", "haversine"]), default="geodesic", show_default=True, help="Distance model")
@click.option("--output", "-o", required=True, type=click.Path(), help="Output CSV")
def distances(sites: str, site_col: str, x_col: str, y_col: str, method: str, output: str) -> None:
    """Pairwise geographic distances (km) between all sites."""
    from .distance import calculate_pairwise_distances_matrix

    table = load_site_table(sites, site_col=site_col, x_col=x_col, y_col=y_col)
    result = calculate_pairwise_distances_matrix(
        table.to_frame(site_col=site_col), distance_fun=method, site_col=site_col
    )
    Path(output).parent.mkdir(parents=True, exist_ok=True)
    result.to_csv(output, index=False)
    click.echo(f"Distances written to {output}")


@main.command()
@_site_options
@click.option("--output", "-o", required=True, type=click.Path(), help="Output CSV")
def gower(sites: str, site_col: str, x_col: str, y_col: str, output: str) -> None:
    """Pairwise Gower dissimilarity between all sites."""
    from .distance import calculate_pairwise_gower_dist_matrix

    table = load_site_table(sites, site_col=site_col, x_col=x_col, y_col=y_col)
    result = calculate_pairwise_gower_dist_matrix(
        table.to_frame(site_col=site_col), table.species, site_col=site_col
    )
    Path(output).parent.mkdir(parents=True, exist_ok=True)
    result.to_csv(output, index=False)
    click.echo(f"Gower dissimilarities written to {output}")


@main.command()
@_site_options
@click.option("--max-order", default=10, show_default=True, help="Highest zeta order")
@click.option("--sam", default=1000, show_default=True, help="Combinations sampled per order")
@click.option("--output", "-o", default="zeta_results", show_default=True, help="Output directory")
def zeta(sites: str, site_col: str, x_col: str, y_col: str, max_order: int, sam: int, output: str) -> None:
    """Zeta decline and calibration table."""
    from .zeta import calibration_table, zeta_decline

    table = load_site_table(sites, site_col=site_col, x_col=x_col, y_col=y_col)
    out = Path(output)
    out.mkdir(parents=True, exist_ok=True)

    top = min(max_order, table.n_sites)
    decline = zeta_decline(table, orders=range(1, top + 1), sam=sam)
    decline.to_frame().to_csv(out / "zeta_decline.csv", index=False)
    calibration_table(table, orders=range(1, min(top, 3) + 1), sam=sam).to_csv(out / "calibration.csv")
    click.echo(f"Preferred decline form: {decline.best or 'n/a'}")
    click.echo(f"Zeta results written to {out}/")


@main.command()
@_site_options
@click.option("--env", "-e", required=True, type=click.Path(exists=True), help="Site-by-environment table (CSV/TSV)")
@click.option("--order", "-k", default=2, show_default=True, help="MS-GDM order")
@click.option("--sam", default=1000, show_default=True, help="Combinations sampled for fitting")
@click.option("--normalize", type=click.Choice(["jaccard", "sorensen", "simpson"]), default="jaccard", show_default=True, help="Zeta normalisation")
@click.option("--no-distance", is_flag=True, help="Exclude geographic distance as a predictor")
@click.option("--boundary", nargs=4, type=float, default=None, help="xmin ymin xmax ymax")
@click.option("--output", "-o", default="predict_results", show_default=True, help="Output directory")
def predict(sites: str, site_col: str, x_col: str, y_col: str, env: str, order: int, sam: int, normalize: str, no_distance: bool, boundary: tuple[float, float, float, float] | None, output: str) -> None:
    """Fit an MS-GDM and predict dissimilarity for every site pair."""
    from .ordination import ordinate_prediction
    from .predict import predict_dissim, scale_environment
    from .report import write_model_summary
    from .zeta import MSGDMConfig, calibration_table, fit_msgdm

    boundary = tuple(boundary) if boundary else None
    table = load_site_table(sites, site_col=site_col, x_col=x_col, y_col=y_col)
    env_raw = load_environment(env, site_col=site_col)
    site_coords = table.to_frame(site_col=site_col).set_index(site_col)[["x", "y"]]
    if {"x", "y"} <= set(env_raw.columns):
        # Environment carries its own coordinates; predict over all its sites
        coords = env_raw[["x", "y"]]
        env_raw = env_raw.drop(columns=["x", "y"])
    else:
        coords = site_coords
        env_raw = env_raw.loc[env_raw.index.isin(table.site_ids)]
    env_df = scale_environment(env_raw)
    out = Path(output)
    out.mkdir(parents=True, exist_ok=True)

    config = MSGDMConfig(
        order=order, sam=sam, normalize=normalize, include_distance=not no_distance
    )
    model = fit_msgdm(table, env_df, config)
    write_model_summary(model, out / "msgdm_summary.txt")

    calibration = calibration_table(table, orders=sorted({1, 2, order}), sam=sam)
    result = predict_dissim(
        None, env_df, model, calibration, coords, boundary=boundary
    )
    result.table.to_csv(out / "predicted_dissimilarity.csv", index=False)
    if boundary is None:
        ordinate_prediction(result).to_csv(out / "predicted_ordination.csv", index=False)
    click.echo(f"Explained deviance: {model.explained_deviance:.3f}")
    click.echo(f"Predictions written to {out}/")


@main.command()
@_site_options
@click.option("--env", "-e", default=None, type=click.Path(exists=True), help="Site-by-environment table (optional)")
@click.option("--metric", "-m", "metrics", multiple=True, help="Metric(s) to compute (default: all vector metrics)")
@click.option("--order", "-k", default=2, show_default=True, help="Sites per combination")
@click.option("--sample-no", default=None, type=int, help="Max combinations to sample")
@click.option("--jobs", "-j", default=1, show_default=True, help="Parallel workers")
@click.option("--output", "-o", default="results", show_default=True, help="Output directory")
def report(sites: str, site_col: str, x_col: str, y_col: str, env: str | None, metrics: tuple[str, ...], order: int, sample_no: int | None, jobs: int, output: str) -> None:
    """Run the full analysis pipeline."""
    from .report import DEFAULT_METRICS, generate_report

    table = load_site_table(sites, site_col=site_col, x_col=x_col, y_col=y_col)
    env_df = load_environment(env, site_col=site_col) if env else None

    generate_report(
        table,
        output,
        metrics=metrics or DEFAULT_METRICS,
        order=order,
        env=env_df,
        sample_no=sample_no,
        n_jobs=jobs,
        site_col=site_col,
    )
    click.echo(f"Full report written to {output}/")
