"""
Main CLI application for the Voting Power Tracker.
"""

from typing import Optional, List, Dict, Any
import csv
import json
import logging
from pathlib import Path

import requests
import typer
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.panel import Panel

from .config import Config
from .api_clients import EtherscanClient, Web3Client, ChainBlockSource, history_from_transfers
from .engine import VotingPowerEngine
from .exceptions import UpstreamReadError, VotingPowerError
from .models import ConcentrationMetrics, PowerPrediction, Segment, Snapshot
from .utils import format_number, format_token_amount, is_valid_ethereum_address, short_address

logger = logging.getLogger(__name__)


app = typer.Typer(
    name="vp-tracker",
    help="Track governance voting power and analyze how concentrated it is."
)

console = Console()


def load_config() -> Config:
    """Load application configuration."""
    try:
        config = Config.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)

    logging.basicConfig(level=config.log_level)
    if not config.token_address:
        console.print("[red]Configuration error: TOKEN_ADDRESS is required[/red]")
        console.print("\n[yellow]Run 'vp-tracker setup' to create a .env template.[/yellow]")
        raise typer.Exit(1)
    return config


def build_engine(config: Config) -> VotingPowerEngine:
    """Wire chain clients into a new engine."""
    web3_client = Web3Client(config)
    etherscan_client = EtherscanClient(config) if config.etherscan_api_key else None
    return VotingPowerEngine(
        reader=web3_client,
        blocks=ChainBlockSource(web3_client, etherscan_client),
        config=config,
    )


def build_transfer_source(config: Config) -> Optional[EtherscanClient]:
    """Etherscan client for transfer history, when a key is configured."""
    if not config.etherscan_api_key:
        return None
    return EtherscanClient(config)


def seed_history(engine: VotingPowerEngine, config: Config, address: str) -> int:
    """Backfill an address's history from its token transfers; returns points added."""
    source = build_transfer_source(config)
    if source is None:
        console.print(
            "[yellow]No ETHERSCAN_API_KEY set, forecasting from live readings only.[/yellow]")
        return 0

    try:
        transfers = source.get_token_transfers(config.token_address, address=address)
    except (requests.RequestException, UpstreamReadError, ValueError) as e:
        console.print(f"[yellow]Could not fetch transfer history: {e}[/yellow]")
        return 0

    record = engine.get_record(address)
    points = history_from_transfers(address, transfers, record.effective_power)
    return engine.seed_history(address, points)


def track_addresses(engine: VotingPowerEngine, addresses: List[str]) -> List[str]:
    """Start tracking every valid address; returns the ones that failed."""
    failed = []
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("Reading voting power...", total=None)
        for address in addresses:
            if not is_valid_ethereum_address(address):
                console.print(f"[yellow]Skipping invalid address: {address}[/yellow]")
                failed.append(address)
                continue
            try:
                engine.start_tracking(address)
            except VotingPowerError as e:
                console.print(f"[yellow]Could not track {address}: {e.message}[/yellow]")
                failed.append(address)
        progress.update(task, description="✓ Read voting power")
    return failed


def display_snapshot(snapshot: Snapshot, config: Config, top: int):
    """Display snapshot summary and top holders in a rich table."""
    dist = snapshot.distribution_metrics
    total = format_number(format_token_amount(snapshot.total_voting_power, config.token_decimals))
    console.print(Panel(
        f"Snapshot: [yellow]{snapshot.id}[/yellow]\n"
        f"Block: {snapshot.block_number:,}\n"
        f"Total voting power: [green]{total}[/green]\n"
        f"Holders: {dist.total_holders:,} ({dist.active_holders:,} active, "
        f"participation {dist.participation_rate:.1%})",
        title="Voting Power Snapshot",
        expand=False
    ))

    if not snapshot.holders:
        console.print("[yellow]No tracked holders.[/yellow]")
        return

    table = Table(title="\nTop Holders")
    table.add_column("Rank", style="cyan", no_wrap=True)
    table.add_column("Address", style="magenta", no_wrap=True)
    table.add_column("Voting Power", style="green", justify="right")
    table.add_column("Share", style="white", justify="right")
    table.add_column("Delegation", style="blue", no_wrap=True)

    for holder in snapshot.top_holders(top):
        table.add_row(
            str(holder.rank),
            short_address(holder.address),
            format_number(format_token_amount(holder.power, config.token_decimals)),
            f"{holder.percentage:.2f}%",
            holder.delegation_status,
        )

    console.print(table)


def display_concentration(metrics: ConcentrationMetrics):
    risk_style = {"low": "green", "medium": "yellow", "high": "red", "critical": "bold red"}
    ratios = ", ".join(f"{k} {v:.2f}%" for k, v in metrics.concentration_ratios.items())
    console.print(Panel(
        f"Gini coefficient: {metrics.gini:.4f}\n"
        f"Herfindahl index: {metrics.hhi:.4f}\n"
        f"Nakamoto coefficient: {metrics.nakamoto}\n"
        f"Entropy: {metrics.entropy:.4f} bits\n"
        f"Theil index: {metrics.theil_index:.4f}\n"
        f"Effective holders: {metrics.effective_holders:.2f}\n"
        f"Concentration: {ratios}\n"
        f"Top 10% hold: {metrics.top_decile_share:.2f}%\n"
        f"Risk: [{risk_style[metrics.risk_level]}]{metrics.risk_level}[/] "
        f"(decentralization score {metrics.decentralization_score})",
        title="Concentration",
        expand=False
    ))


def display_segments(segments: List[Segment], config: Config):
    table = Table(title="\nHolder Segments")
    table.add_column("Segment", style="cyan", no_wrap=True)
    table.add_column("Range", style="white", no_wrap=True)
    table.add_column("Holders", style="magenta", justify="right")
    table.add_column("Voting Power", style="green", justify="right")
    table.add_column("Share", style="white", justify="right")
    table.add_column("Behaviour", style="blue", no_wrap=True)

    for segment in segments:
        low = format_number(format_token_amount(segment.min_power, config.token_decimals))
        high = ("∞" if segment.max_power is None else
                format_number(format_token_amount(segment.max_power, config.token_decimals)))
        behaviour = ("N/A" if segment.profile.data_incomplete else
                     f"votes {segment.profile.voting_frequency:.0%}")
        table.add_row(
            segment.name,
            f"{low} - {high}",
            f"{segment.holder_count:,}",
            format_number(format_token_amount(segment.total_power, config.token_decimals)),
            f"{segment.percentage:.2f}%",
            behaviour,
        )

    console.print(table)


def display_predictions(address: str, predictions: List[PowerPrediction], config: Config):
    if not predictions:
        console.print(
            f"[yellow]Not enough history for {short_address(address)} to predict yet.[/yellow]")
        return

    table = Table(title=f"\nVoting Power Forecast for {short_address(address)}")
    table.add_column("Date", style="white", no_wrap=True)
    table.add_column("Predicted", style="green", justify="right")
    table.add_column("Bearish", style="red", justify="right")
    table.add_column("Bullish", style="cyan", justify="right")
    table.add_column("Confidence", style="magenta", justify="right")

    for p in predictions:
        table.add_row(
            p.timestamp.strftime("%Y-%m-%d"),
            format_number(format_token_amount(p.predicted_power, config.token_decimals)),
            format_number(format_token_amount(p.bearish_power, config.token_decimals)),
            format_number(format_token_amount(p.bullish_power, config.token_decimals)),
            f"{p.confidence:.0%}",
        )

    console.print(table)


def build_report(snapshot: Snapshot, metrics: ConcentrationMetrics,
                 segments: List[Segment]) -> Dict[str, Any]:
    return {
        'snapshot': snapshot.to_dict(),
        'concentration': metrics.to_dict(),
        'segments': [segment.to_dict() for segment in segments],
    }


def export_to_json(report: Dict[str, Any], filepath: str):
    """Export an analysis report to JSON."""
    with open(filepath, 'w') as jsonfile:
        json.dump(report, jsonfile, indent=2, default=str)


def export_to_csv(snapshot: Snapshot, filepath: str):
    """Export snapshot holders to CSV."""
    with open(filepath, 'w', newline='') as csvfile:
        writer = csv.writer(csvfile)
        writer.writerow([
            'Rank', 'Address', 'Voting_Power', 'Percentage', 'Delegated_Power',
            'Received_Delegations', 'Delegation_Status', 'Snapshot_Id', 'Block_Number'
        ])
        for holder in snapshot.holders:
            writer.writerow([
                holder.rank,
                holder.address,
                str(holder.power),
                f"{holder.percentage:.6f}",
                str(holder.delegated_power),
                str(holder.received_delegations),
                holder.delegation_status,
                snapshot.id,
                snapshot.block_number,
            ])


@app.command()
def analyze(
    addresses: List[str] = typer.Argument(..., help="Holder addresses to track"),
    output_format: str = typer.Option(
        "table", "--format", "-f", help="Output format: table, csv, json"),
    output_file: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output file path"),
    top: int = typer.Option(
        10, "--top", "-t", help="Number of top holders to display"),
):
    """Snapshot the given holders and report how concentrated their voting power is."""
    config = load_config()

    with build_engine(config) as engine:
        failed = track_addresses(engine, addresses)
        if len(failed) == len(addresses):
            console.print("[red]None of the addresses could be tracked.[/red]")
            raise typer.Exit(1)

        try:
            snapshot = engine.create_snapshot("cli")
            metrics = engine.get_concentration_metrics(snapshot.id)
            segments = engine.get_segments(snapshot.id)
        except VotingPowerError as e:
            console.print(f"[red]Analysis failed: {e.message}[/red]")
            raise typer.Exit(1)

    if output_format == "table" or not output_file:
        display_snapshot(snapshot, config, top)
        display_concentration(metrics)
        display_segments(segments, config)

    if output_file:
        if output_format == "csv":
            export_to_csv(snapshot, output_file)
            console.print(f"[green]Results exported to {output_file}[/green]")
        elif output_format == "json":
            export_to_json(build_report(snapshot, metrics, segments), output_file)
            console.print(f"[green]Results exported to {output_file}[/green]")
        else:
            console.print(
                f"[yellow]Unsupported output format: {output_format}[/yellow]")


@app.command()
def predict(
    address: str = typer.Argument(..., help="Holder address"),
    days: int = typer.Option(30, "--days", "-d", help="Forecast horizon in days"),
):
    """Forecast an address's voting power from its token transfer history."""
    config = load_config()

    with build_engine(config) as engine:
        try:
            engine.start_tracking(address)
            seed_history(engine, config, address)
            predictions = engine.predict(address, days)
        except (VotingPowerError, ValueError) as e:
            console.print(f"[red]Prediction failed: {e}[/red]")
            raise typer.Exit(1)

    display_predictions(address, predictions, config)


@app.command()
def setup():
    """Setup the application by creating a .env file template."""
    env_content = """# Voting Power Tracker Configuration

# Required: governance token (ERC20Votes) and an RPC endpoint
TOKEN_ADDRESS=your_token_address_here
RPC_URL=https://eth.llamarpc.com

# Optional: Etherscan API key for block numbers and transfer history (get from https://etherscan.io/apis)
# ETHERSCAN_API_KEY=your_etherscan_api_key_here

# Tracking Settings
TOKEN_DECIMALS=18
HISTORY_CAP=1000
SNAPSHOT_RETENTION=100
READ_TIMEOUT=5.0

# Analysis Settings
MIN_HISTORY_POINTS=10
SEGMENT_BREAKPOINTS=100,1000,10000,100000
SEGMENT_NAMES=micro,small,medium,large,whale

LOG_LEVEL=WARNING
"""

    env_path = Path(".env")
    if env_path.exists():
        console.print("[yellow].env file already exists![/yellow]")
        if not typer.confirm("Overwrite existing .env file?"):
            return

    with open(env_path, 'w') as f:
        f.write(env_content)

    console.print(f"[green]Created .env file at {env_path.absolute()}[/green]")
    console.print(
        "\n[yellow]Please edit the .env file and add your token address:[/yellow]")
    console.print("1. Set TOKEN_ADDRESS to the governance token contract")
    console.print("2. Point RPC_URL at a node for the token's chain")
    console.print("3. Optional: Add an Etherscan key for block numbers and forecasts")
    console.print("4. Run: vp-tracker analyze <address> [<address> ...]")


if __name__ == "__main__":
    app()
