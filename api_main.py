import logging
import uvicorn
from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import API_HOST, API_PORT
from models.event import EventType
from services.block_tracker import BlockTracker
from services.consensus_alerts import ConsensusAlerts
from services.db import SessionLocal, init_db
from services.event_store import EventStore
from services.node_tracker import NodeTracker, downsample_history
from services.peer_tracker import PeerTracker
from services.poll_jobs import run_block_poll, run_node_poll, run_validator_poll
from services.validator_tracker import ValidatorTracker
from utils.decorators import cron_job
from utils.timing import ONE_DAY_MS, ONE_MINUTE_MS, now_ms

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Concordium Network Tracker API",
    description="""
    Tracks reporting nodes, validators (bakers) and finalized blocks of the
    Concordium network.

    CRON TRIGGERS (bearer token in the Authorization header):
    - /api/cron/poll-blocks: ingest new finalized blocks
    - /api/cron/poll-nodes: diff the dashboard snapshot (?mode=simple|full)
    - /api/cron/poll-validators: full validator registry refresh

    Called without an Authorization header a trigger only describes itself.

    READ APIS:
    - /api/peers: known peers with provenance and geo fields
    - /api/validators: validators with consensus visibility summary
    - /api/tracking/events: node events by time range, type and node
    - /api/tracking/new-nodes: nodes first seen in a time range
    - /api/tracking/node-history: per-node health history, optionally downsampled
    - /api/network/snapshots: network summary time series
    - /api/blocks/stats: block production by visible vs phantom bakers

    All timestamps are epoch milliseconds.
    """,
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def time_range(since: Optional[int], until: Optional[int]):
    """Default range: last 24 hours."""
    now = now_ms()
    until = until if until is not None else now
    since = since if since is not None else until - ONE_DAY_MS
    return since, until


def iso(ts: int) -> str:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat().replace('+00:00', 'Z')


def error_response(message: str, e: Exception):
    logger.exception(message)
    return JSONResponse(status_code=500, content={"error": message, "message": str(e)})


@app.on_event("startup")
def create_tables():
    init_db()


@app.get("/", response_model=dict, tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Response:
      - status (str): "ok" if the API is running.
    """
    return {"status": "ok"}


# --- Cron triggers ---
@app.get("/api/cron/poll-blocks", tags=["Cron"])
@cron_job("/api/cron/poll-blocks", "Poll Concordium chain for new blocks and update validator block counts")
def poll_blocks(authorization: Optional[str] = Header(None)):
    session = SessionLocal()
    try:
        return run_block_poll(session)
    finally:
        session.close()


@app.get("/api/cron/poll-nodes", tags=["Cron"])
@cron_job("/api/cron/poll-nodes", "Poll Concordium nodes and track changes")
def poll_nodes(
    authorization: Optional[str] = Header(None),
    mode: str = Query("simple", pattern="^(simple|full)$", description="simple: dashboard only, full: also node RPC peers"),
):
    session = SessionLocal()
    try:
        return run_node_poll(session, mode=mode)
    finally:
        session.close()


@app.get("/api/cron/poll-validators", tags=["Cron"])
@cron_job("/api/cron/poll-validators", "Poll Concordium validators separately from node tracking")
def poll_validators(authorization: Optional[str] = Header(None)):
    session = SessionLocal()
    try:
        return run_validator_poll(session)
    finally:
        session.close()


# --- Read APIs ---
@app.get("/api/peers", response_model=dict, tags=["Peers"])
def get_peers(source: Optional[str] = Query(None, pattern="^(reporting|grpc|inferred)$", description="Filter by provenance")):
    """
    Returns all known peers.

    FIELDS: peerId, source, firstSeen, lastSeen, nodeName, clientVersion, ipAddress, port,
            catchupStatus, geoCountry, geoCity, geoLat, geoLon, geoIsp, seenByCount, isBootstrapper
    """
    session = SessionLocal()
    try:
        tracker = PeerTracker(session)
        peers = tracker.get_all_peers(source)
        return {"success": True, "count": len(peers), "stats": tracker.peer_stats(), "peers": peers}
    except Exception as e:
        return error_response("Failed to fetch peers", e)
    finally:
        session.close()


@app.get("/api/validators", response_model=dict, tags=["Validators"])
def get_validators(phantom_only: bool = Query(False, description="Only chain_only (phantom) validators")):
    """
    Returns validators with the consensus visibility summary.

    visibility: totalRegistered, visibleReporting, phantomChainOnly, validatorCoveragePct,
                stakeVisibilityPct, visibleLotteryPower, phantomLotteryPower, quorumHealth
    """
    session = SessionLocal()
    try:
        tracker = ValidatorTracker(session)
        validators = tracker.get_phantom_validators() if phantom_only else tracker.get_all_validators()
        return {
            "success": True,
            "count": len(validators),
            "visibility": tracker.calculate_consensus_visibility(),
            "validators": validators,
        }
    except Exception as e:
        return error_response("Failed to fetch validators", e)
    finally:
        session.close()


@app.get("/api/validators/{baker_id}/history", response_model=dict, tags=["Validators"])
def get_validator_history(baker_id: int):
    session = SessionLocal()
    try:
        history = ValidatorTracker(session).get_validator_history(baker_id)
        if history is None:
            return JSONResponse(status_code=404, content={"error": f"Validator {baker_id} not found"})
        return {"success": True, **history}
    finally:
        session.close()


@app.get("/api/alerts", response_model=dict, tags=["Alerts"])
def get_alerts(limit: int = Query(50, ge=1, le=500, description="Max alerts to return")):
    """Recent consensus alerts, newest first."""
    session = SessionLocal()
    try:
        alerts = ConsensusAlerts(session).get_recent_alerts(limit)
        return {"success": True, "count": len(alerts), "alerts": alerts}
    except Exception as e:
        return error_response("Failed to fetch alerts", e)
    finally:
        session.close()


@app.post("/api/alerts/{alert_id}/acknowledge", response_model=dict, tags=["Alerts"])
def acknowledge_alert(alert_id: int, by: str = Query(..., min_length=1, description="Who acknowledges the alert")):
    session = SessionLocal()
    try:
        if not ConsensusAlerts(session).acknowledge_alert(alert_id, by):
            return JSONResponse(status_code=404, content={"error": f"Alert {alert_id} not found"})
        session.commit()
        return {"success": True, "id": alert_id, "acknowledgedBy": by}
    finally:
        session.close()


@app.get("/api/tracking/events", response_model=dict, tags=["Tracking"])
def get_events(
    since: Optional[int] = Query(None, description="Start timestamp (default: 24 hours ago)"),
    until: Optional[int] = Query(None, description="End timestamp (default: now)"),
    type: Optional[EventType] = Query(None, description="Filter by event type"),
    nodeId: Optional[str] = Query(None, description="Filter by node ID"),
    limit: int = Query(100, ge=1, le=1000, description="Max events to return"),
):
    """
    Returns recent node events (appearances, restarts, health changes, ...), newest first.
    """
    since, until = time_range(since, until)
    session = SessionLocal()
    try:
        events = EventStore(session).list_events(
            since, until, event_type=type.value if type else None, node_id=nodeId, limit=limit,
        )
        for event in events:
            event['timestampISO'] = iso(event['timestamp'])
        return {
            "success": True,
            "timeRange": {"since": since, "until": until, "sinceISO": iso(since), "untilISO": iso(until)},
            "filters": {"type": type.value if type else None, "nodeId": nodeId},
            "count": len(events),
            "events": events,
        }
    except Exception as e:
        return error_response("Failed to fetch events", e)
    finally:
        session.close()


@app.get("/api/tracking/new-nodes", response_model=dict, tags=["Tracking"])
def get_new_nodes(
    since: Optional[int] = Query(None, description="Start timestamp (default: 24 hours ago)"),
    until: Optional[int] = Query(None, description="End timestamp (default: now)"),
):
    since, until = time_range(since, until)
    session = SessionLocal()
    try:
        nodes = NodeTracker(session).get_new_nodes_in_range(since, until)
        return {
            "success": True,
            "timeRange": {"since": since, "until": until, "sinceISO": iso(since), "untilISO": iso(until)},
            "count": len(nodes),
            "nodes": nodes,
        }
    except Exception as e:
        return error_response("Failed to fetch new nodes", e)
    finally:
        session.close()


@app.get("/api/tracking/node-history", response_model=dict, tags=["Tracking"])
def get_node_history(
    nodeId: str = Query(..., description="Node ID"),
    since: Optional[int] = Query(None, description="Start timestamp (default: 24 hours ago)"),
    until: Optional[int] = Query(None, description="End timestamp (default: now)"),
    downsample: Optional[int] = Query(None, ge=1, description="Downsample interval in minutes"),
):
    """
    Returns health history for one node. With downsample, one sample (the most
    recent) per interval, stamped with the interval start.
    """
    since, until = time_range(since, until)
    session = SessionLocal()
    try:
        history = NodeTracker(session).get_node_health_history(nodeId, since, until)
        if downsample:
            history = downsample_history(history, downsample * ONE_MINUTE_MS)
        for sample in history:
            sample['timestampISO'] = iso(sample['timestamp'])
        return {
            "success": True,
            "nodeId": nodeId,
            "timeRange": {"since": since, "until": until, "sinceISO": iso(since), "untilISO": iso(until)},
            "downsampleMinutes": downsample,
            "dataPoints": len(history),
            "history": history,
        }
    except Exception as e:
        return error_response("Failed to fetch node history", e)
    finally:
        session.close()


@app.get("/api/network/snapshots", response_model=dict, tags=["Network"])
def get_network_snapshots(limit: int = Query(100, ge=1, le=1000)):
    session = SessionLocal()
    try:
        snapshots = NodeTracker(session).get_latest_network_snapshots(limit)
        return {"success": True, "count": len(snapshots), "snapshots": snapshots}
    except Exception as e:
        return error_response("Failed to fetch network snapshots", e)
    finally:
        session.close()


@app.get("/api/blocks/stats", response_model=dict, tags=["Blocks"])
def get_block_stats(
    window_hours: int = Query(24, ge=1, le=720, description="Window size in hours"),
    top: int = Query(10, ge=1, le=100, description="Number of top producers"),
):
    session = SessionLocal()
    try:
        tracker = BlockTracker(session)
        return {
            "success": True,
            "latestHeight": tracker.get_latest_block_height(),
            "production": tracker.calculate_block_production_stats(window_hours * 60 * ONE_MINUTE_MS),
            "topProducers": tracker.get_top_block_producers(top),
        }
    except Exception as e:
        return error_response("Failed to fetch block stats", e)
    finally:
        session.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    uvicorn.run(app, host=API_HOST, port=API_PORT)
