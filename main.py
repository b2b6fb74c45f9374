import json

import click
from sqlalchemy import text
from services.db import engine, SessionLocal, init_db as init_db_func
from services.block_tracker import BlockTracker
from services.consensus_alerts import ConsensusAlerts, summarize_checks
from services.errors import PollJobError
from services.node_export import export_nodes_json
from services.node_tracker import NodeTracker
from services.peer_tracker import PeerTracker
from services.poll_jobs import run_block_poll, run_node_poll, run_validator_poll
from services.validator_export import ValidatorExporter
from services.validator_tracker import ValidatorTracker

import logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

TABLE_DESCRIPTIONS = {
    'nodes': 'Reporting nodes from the Concordium dashboard',
    'node_sessions': 'Uptime sessions of reporting nodes',
    'node_health_history': 'Per-poll health samples of every node',
    'peers': 'Known peers (reporting, grpc, inferred)',
    'peer_connections': 'Which reporting node lists which peer',
    'validators': 'Validator (baker) registry with visibility and block counters',
    'validator_transitions': 'Validator visibility flips and large stake changes',
    'consensus_snapshots': 'Consensus visibility time series',
    'blocks': 'Finalized blocks and their bakers',
    'events': 'Node event log',
    'network_snapshots': 'Network summary per node poll',
    'consensus_alerts': 'Consensus visibility alerts (phantom blocks, stake visibility, quorum health)',
    'quorum_health_history': 'Quorum health recorded by each alert run',
}


@click.group()
def cli():
    """Concordium network tracker CLI entrypoint."""
    pass


@cli.command(name="init_db")
def init_db():
    """Initialize the database (create tables)."""
    init_db_func()
    click.echo("Database initialized.")


def _run_job(job, *args, **kwargs):
    session = SessionLocal()
    try:
        return job(session, *args, **kwargs)
    except PollJobError as e:
        raise click.ClickException(f"{e.kind}: {e.message} (timings: {e.timings})")
    finally:
        session.close()


@cli.command(name="poll_blocks")
def poll_blocks():
    """Fetch new finalized blocks and update validator block counts."""
    result = _run_job(run_block_poll)
    tracking = result['blockTracking']
    click.echo("Block poll completed:")
    click.echo(f"  Previous height: {tracking['previousHeight']}")
    click.echo(f"  Latest height: {tracking['latestHeight']}")
    click.echo(f"  Blocks processed: {tracking['blocksProcessed']}")
    click.echo(f"  Unique bakers: {tracking['uniqueBakers']}")
    click.echo(f"  Skipped duplicates: {tracking['skippedDuplicates']}")
    if tracking['unknownBakers']:
        click.echo(f"  Unknown bakers: {tracking['unknownBakers']}")
    _echo_errors(tracking.get('fetchErrors'))


@cli.command(name="poll_nodes")
@click.option('--mode', type=click.Choice(['simple', 'full']), default='simple',
              help='simple: dashboard only, full: also peers from the node RPC')
def poll_nodes(mode):
    """Poll the dashboard, diff nodes and record a network snapshot."""
    result = _run_job(run_node_poll, mode=mode)
    metrics = result['networkMetrics']
    click.echo(f"Node poll ({mode}) completed: {result['nodesPolled']} nodes, max height {result['maxHeight']}")
    click.echo(f"  Healthy/lagging/issue: {metrics['healthyNodes']}/{metrics['laggingNodes']}/{metrics['issueNodes']}")
    click.echo(f"  Pulse score: {metrics['pulseScore']}")
    for name, count in result['changes'].items():
        click.echo(f"  {name}: {count}")
    _echo_errors(result.get('fetchErrors'))


@cli.command(name="poll_validators")
def poll_validators():
    """Refresh the validator registry and link it to reporting nodes."""
    result = _run_job(run_validator_poll)
    tracking = result['validatorTracking']
    click.echo("Validator poll completed:")
    click.echo(f"  Total validators: {tracking['totalValidators']}")
    click.echo(f"  Visible: {tracking['visibleValidators']}")
    click.echo(f"  Phantom: {tracking['phantomValidators']}")
    click.echo(f"  New: {tracking['newValidators']}")
    click.echo(f"  Stake visibility: {tracking['stakeVisibilityPct']}% ({tracking['quorumHealth']})")
    _echo_errors(tracking.get('fetchErrors'))
    for alert in result.get('alerts', {}).get('alerts', []):
        click.echo(f"  Alert [{alert['severity']}]: {alert['message']}")


def _echo_errors(errors):
    if not errors:
        return
    click.echo("Errors:")
    for error in errors[:5]:  # Show first 5 errors
        click.echo(f"  - {error}")
    if len(errors) > 5:
        click.echo(f"  ... and {len(errors) - 5} more errors")


@cli.command(name="alerts")
@click.option('--check', is_flag=True, help='Run the alert checks before listing')
@click.option('--limit', default=20, show_default=True, help='Number of alerts to list')
def alerts(check, limit):
    """List recent consensus alerts, optionally running the checks first."""
    session = SessionLocal()
    try:
        consensus_alerts = ConsensusAlerts(session)
        if check:
            summary = summarize_checks(consensus_alerts.run_all_checks())
            session.commit()
            click.echo(f"Checks done: {summary['alertsTriggered']} triggered, "
                       f"{summary['alertsRecorded']} recorded (quorum {summary['quorumHealth']})")
        recent = consensus_alerts.get_recent_alerts(limit)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if not recent:
        click.echo("No alerts recorded.")
        return
    for alert in recent:
        ack = " (acknowledged)" if alert['acknowledged'] else ""
        click.echo(f"{alert['timestamp']} [{alert['severity']}] {alert['type']}: {alert['message']}{ack}")


@cli.command(name="recalculate_blocks")
def recalculate_blocks():
    """Rebuild 24h/7d/30d block and transaction counters from stored blocks."""
    session = SessionLocal()
    try:
        updated = BlockTracker(session).recalculate_block_counts()
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
    click.echo(f"Block counts recalculated for {updated} validators.")


@cli.command(name="show_table")
@click.argument('table')
def show_table(table):
    """
    Show first 10 records from a table.

    Examples:
      python main.py show_table nodes
      python main.py show_table validators
      python main.py show_table events
    """
    if table not in TABLE_DESCRIPTIONS:
        click.echo(f"Error: Table '{table}' does not exist.\n", err=True)
        click.echo("Available tables:")
        for tbl, desc in TABLE_DESCRIPTIONS.items():
            click.echo(f"  {tbl:22} - {desc}")
        click.echo("\nExample: python main.py show_table nodes")
        return

    with engine.connect() as conn:
        result = conn.execute(text(f"SELECT * FROM {table} LIMIT 10"))
        rows = result.fetchall()
        if not rows:
            click.echo(f"No records found in table '{table}'.")
            return
        columns = list(result.keys())
        click.echo(f"Columns: {columns}")
        click.echo(f"Showing first 10 records from '{table}':")
        for row in rows:
            click.echo(str(dict(zip(columns, row))))


@cli.command(name="export_nodes")
@click.option('--out', default=None, help='File to save JSON (optional)')
@click.option('--active-only', is_flag=True, help='Only nodes present in the latest snapshot')
def export_nodes(out, active_only):
    """Export tracked nodes as JSON."""
    js = export_nodes_json(out, active_only=active_only)
    if out:
        click.echo(f"Nodes exported to {out}")
    else:
        click.echo(js)


@cli.command(name="export_validators")
@click.option('--format', 'export_format', type=click.Choice(['json', 'csv']), default='json', help='Export format')
@click.option('--out', default=None, help='Output file (optional)')
@click.option('--phantom-only', is_flag=True, help='Only chain_only (phantom) validators')
def export_validators(export_format, out, phantom_only):
    """Export validators data."""
    click.echo(f"Exporting validators in {export_format.upper()} format...")

    exporter = ValidatorExporter()

    if export_format == 'json':
        output_file = exporter.export_to_json(output_file=out, phantom_only=phantom_only)
    else:  # csv
        output_file = exporter.export_to_csv(output_file=out, phantom_only=phantom_only)

    if output_file:
        click.echo(f"Validators exported to: {output_file}")
    else:
        click.echo("No validators to export.")


@cli.command(name="network_stats")
@click.option('--json', 'as_json', is_flag=True, help='Print raw JSON')
def network_stats(as_json):
    """Show network, consensus visibility, peer and block production statistics."""
    session = SessionLocal()
    try:
        snapshots = NodeTracker(session).get_latest_network_snapshots(1)
        visibility = ValidatorTracker(session).calculate_consensus_visibility()
        peers = PeerTracker(session).peer_stats()
        block_tracker = BlockTracker(session)
        production = block_tracker.calculate_block_production_stats()
        top = block_tracker.get_top_block_producers(5)
    finally:
        session.close()

    if as_json:
        click.echo(json.dumps({
            "network": snapshots[0] if snapshots else None,
            "consensusVisibility": visibility,
            "peers": peers,
            "blockProduction": production,
            "topProducers": top,
        }, indent=2))
        return

    if snapshots:
        s = snapshots[0]
        click.echo("Network (latest snapshot):")
        click.echo(f"  Nodes: {s['totalNodes']} ({s['healthyNodes']} healthy, {s['laggingNodes']} lagging, {s['issueNodes']} issue)")
        click.echo(f"  Avg peers: {s['avgPeers']}, avg latency: {s['avgLatency']} ms")
        click.echo(f"  Finalization lag (p95): {s['maxFinalizationLag']}")
        click.echo(f"  Consensus participation: {s['consensusParticipation']}%")
        click.echo(f"  Pulse score: {s['pulseScore']}")
    else:
        click.echo("No network snapshots yet.")

    click.echo("Consensus visibility:")
    click.echo(f"  Validators: {visibility['totalRegistered']} ({visibility['visibleReporting']} visible, {visibility['phantomChainOnly']} phantom)")
    click.echo(f"  Stake visibility: {visibility['stakeVisibilityPct']:.2f}% ({visibility['quorumHealth']})")

    click.echo("Peers:")
    click.echo(f"  Total: {peers['total']} (reporting {peers['reporting']}, grpc {peers['grpc']}, inferred {peers['inferred']})")
    click.echo(f"  Bootstrappers: {peers['bootstrappers']}")

    click.echo("Block production (24h):")
    click.echo(f"  Blocks: {production['totalBlocks']}, phantom share: {production['phantomBlockPct']}%")
    for producer in top:
        click.echo(f"    - baker {producer['bakerId']} ({producer['source']}): {producer['blocks24h']} blocks")


if __name__ == "__main__":
    cli()
