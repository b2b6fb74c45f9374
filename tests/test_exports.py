import csv
import json

from services.node_export import export_nodes_json
from services.node_tracker import NodeTracker
from services.validator_export import ValidatorExporter
from tests.conftest import NOW, add_validator, make_node


def test_validator_json_export(session, tmp_path):
    add_validator(session, 1, source='reporting', linked_peer_id='node-a', lottery_power=0.9)
    add_validator(session, 2, lottery_power=0.1)
    out = tmp_path / "validators.json"

    ValidatorExporter(session).export_to_json(output_file=str(out), phantom_only=True)

    data = json.loads(out.read_text(encoding='utf-8'))
    assert data["export_info"]["total_validators"] == 1
    assert data["export_info"]["phantom_only"] is True
    assert data["visibility"]["quorumHealth"] == "healthy"
    assert [v["bakerId"] for v in data["validators"]] == [2]


def test_validator_csv_export_flattens_commissions(session, tmp_path):
    add_validator(session, 1, commission_baking=0.1, commission_finalization=0.05, commission_transaction=0.2)
    out = tmp_path / "validators.csv"

    ValidatorExporter(session).export_to_csv(output_file=str(out))

    with open(out, newline='', encoding='utf-8') as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 1
    assert rows[0]["bakerId"] == "1"
    assert rows[0]["commission_finalization"] == "0.05"


def test_validator_csv_export_without_data(session, tmp_path):
    assert ValidatorExporter(session).export_to_csv(output_file=str(tmp_path / "empty.csv")) is None


def test_node_export_active_only(session, engine, tmp_path):
    tracker = NodeTracker(session)
    tracker.process_nodes([make_node("a"), make_node("b")], 1000, now=NOW)
    tracker.process_nodes([make_node("a")], 1000, now=NOW + 60_000)
    session.commit()
    out = tmp_path / "nodes.json"

    everything = json.loads(export_nodes_json(bind=engine))
    active = json.loads(export_nodes_json(str(out), active_only=True, bind=engine))

    assert [n["nodeId"] for n in everything] == ["a", "b"]
    assert [n["nodeId"] for n in active] == ["a"]
    assert json.loads(out.read_text(encoding='utf-8')) == active
