import contextlib
import datetime
import threading
from decimal import Decimal
import pytest
import requests
from zeep.exceptions import Fault
from arca_fiscal.errors import ConfigurationError, ProtocolError, TransientError
from arca_fiscal.locks import KeyedLock
from arca_fiscal.models import (
    Approval,
    AssociatedDocument,
    DomainRejection,
    EmissionKind,
    OtherTax,
    ReprocessedApproval,
    VatLine,
)
from arca_fiscal.wsfe import InvoiceAuthorizationClient, build_auth, build_detail, parse_cae_response
from conftest import FakeWsfe, approval, make_draft, rejection


def test_build_auth_strips_cuit(ticket):
    assert build_auth(ticket, "20-12345678-9") == {"Token": "TOKEN", "Sign": "SIGN", "Cuit": 20123456789}


def test_build_detail_goods(draft):
    detalle = build_detail(draft, 42)

    assert detalle["CbteDesde"] == detalle["CbteHasta"] == 42
    assert detalle["Concepto"] == 1
    assert detalle["DocTipo"] == 96
    assert detalle["DocNro"] == 30111222
    assert detalle["CbteFch"] == "20260302"
    assert detalle["ImpTotal"] == 121.0
    assert detalle["ImpNeto"] == 100.0
    assert detalle["ImpIVA"] == 21.0
    assert detalle["MonId"] == "PES"
    assert detalle["MonCotiz"] == 1.0
    assert detalle["Iva"] == {"AlicIva": [{"Id": 5, "BaseImp": 100.0, "Importe": 21.0}]}
    assert "FchServDesde" not in detalle
    assert "CbtesAsoc" not in detalle
    assert "Tributos" not in detalle


def test_build_detail_services_defaults_dates_to_issue_date():
    draft = make_draft(concept=2, service_from=datetime.date(2026, 2, 1))
    detalle = build_detail(draft, 1)

    assert detalle["FchServDesde"] == "20260201"
    assert detalle["FchServHasta"] == "20260302"
    assert detalle["FchVtoPago"] == "20260302"


def test_build_detail_multiple_rates_foreign_currency_and_taxes():
    draft = make_draft(
        total=Decimal("236.50"),
        net=Decimal("200.00"),
        vat=Decimal("31.50"),
        other_taxes=Decimal("5.00"),
        currency="dol",
        exchange_rate=Decimal("1050.25"),
        vat_lines=[
            VatLine(rate=Decimal("21"), base=Decimal("100"), amount=Decimal("21.00")),
            VatLine(rate=Decimal("10.5"), base=Decimal("100"), amount=Decimal("10.50")),
        ],
        other_tax_lines=[OtherTax(id=2, description="IIBB", base=Decimal("200"), rate=Decimal("2.5"),
                                  amount=Decimal("5.00"))],
    )
    detalle = build_detail(draft, 7)

    assert detalle["MonId"] == "DOL"
    assert detalle["MonCotiz"] == 1050.25
    assert [a["Id"] for a in detalle["Iva"]["AlicIva"]] == [5, 4]
    assert detalle["Tributos"]["Tributo"][0] == {
        "Id": 2, "Desc": "IIBB", "BaseImp": 200.0, "Alic": 2.5, "Importe": 5.0,
    }


def test_build_detail_credit_note_references():
    draft = make_draft(
        document_type=8,
        associated_documents=[AssociatedDocument(document_type=6, sales_point=3, number=41,
                                                 cuit="20-12345678-9", issue_date=datetime.date(2026, 3, 1))],
    )
    detalle = build_detail(draft, 2)

    assert detalle["CbtesAsoc"] == {"CbteAsoc": [
        {"Tipo": 6, "PtoVta": 3, "Nro": 41, "Cuit": "20123456789", "CbteFch": "20260301"},
    ]}


# ——————————————————————————————————————————————————————————————
# Protocolo
# ——————————————————————————————————————————————————————————————
def test_scenario_a_authorized(client, wsfe, active_config, ticket, draft):
    wsfe.last[(3, 6)] = 41

    outcome = client.request_authorization(active_config, ticket, draft)

    assert isinstance(outcome, Approval)
    assert not isinstance(outcome, ReprocessedApproval)
    assert outcome.sequence_number == 42
    assert outcome.full_number == "00003-00000042"
    assert outcome.cae
    assert outcome.cae_expires_at > draft.issue_date
    assert wsfe.submitted[0][1] == 42


def test_scenario_c_rejection_burns_number(client, wsfe, active_config, ticket, draft):
    wsfe.last[(3, 6)] = 9
    wsfe.scripted.append(lambda n, det: rejection(n, [{"Code": 10013, "Msg": "Receiver doc invalid"}]))

    outcome = client.request_authorization(active_config, ticket, draft)

    assert isinstance(outcome, DomainRejection)
    assert outcome.sequence_number == 10
    assert [(o.code, o.message) for o in outcome.observations] == [(10013, "Receiver doc invalid")]
    assert not hasattr(outcome, "cae")
    assert "[10013] Receiver doc invalid" in outcome.describe()


def test_reprocessed_is_distinct_outcome(client, wsfe, active_config, ticket, draft):
    wsfe.scripted.append(lambda n, det: approval(n, "71234567890123", reproceso="S"))

    outcome = client.request_authorization(active_config, ticket, draft)

    assert isinstance(outcome, ReprocessedApproval)
    assert outcome.reprocessed
    assert outcome.warning


def test_approval_keeps_observations(client, wsfe, active_config, ticket, draft):
    wsfe.scripted.append(lambda n, det: approval(n, "71234567890123", obs=[{"Code": 10217, "Msg": "Aviso"}]))

    outcome = client.request_authorization(active_config, ticket, draft)

    assert isinstance(outcome, Approval)
    assert outcome.observations[0].code == 10217


def test_top_level_errors_are_protocol_errors(client, wsfe, active_config, ticket, draft):
    wsfe.scripted.append(lambda n, det: {
        "FeCabResp": None, "FeDetResp": None,
        "Errors": {"Err": [{"Code": 10015, "Msg": "Campo DocNro invalido"}]},
    })

    with pytest.raises(ProtocolError) as excinfo:
        client.request_authorization(active_config, ticket, draft)

    err = excinfo.value
    assert err.code == "10015"
    assert err.operation == "FECAESolicitar"
    assert err.tenant_id == "tenant-1"
    assert err.document_key == (3, 6)
    assert "[10015] Campo DocNro invalido" in str(err)


def test_unexpected_result_is_protocol_error():
    data = approval(5, "71234567890123")
    data["FeDetResp"]["FECAEDetResponse"][0]["Resultado"] = "X"
    with pytest.raises(ProtocolError):
        parse_cae_response(data, 1, 1, 5)


def test_response_for_other_number_is_protocol_error():
    with pytest.raises(ProtocolError):
        parse_cae_response(approval(6, "71234567890123"), 1, 1, 5)


def test_approval_without_cae_is_protocol_error():
    with pytest.raises(ProtocolError):
        parse_cae_response(approval(5, ""), 1, 1, 5)


def test_missing_sales_point(client, active_config, ticket):
    with pytest.raises(ConfigurationError):
        client.request_authorization(active_config, ticket, make_draft(sales_point=None))


def test_sequence_follows_last_authorized(client, wsfe, active_config, ticket, draft):
    numbers = []
    for _ in range(3):
        before = client.get_last_authorized(active_config, ticket, 3, 6)
        outcome = client.request_authorization(active_config, ticket, draft)
        assert outcome.sequence_number == before + 1
        numbers.append(outcome.sequence_number)
    assert numbers == [1, 2, 3]


def test_retry_after_rejection_uses_fresh_number(client, wsfe, active_config, ticket, draft):
    # ARCA consume el número aun rechazando: el siguiente envío no lo reutiliza
    def burn(n, det):
        wsfe.last[(3, 6)] = n
        return rejection(n, [{"Code": 10013, "Msg": "Receiver doc invalid"}])

    wsfe.scripted.append(burn)
    first = client.request_authorization(active_config, ticket, draft)
    second = client.request_authorization(active_config, ticket, draft)

    assert first.sequence_number == 1
    assert second.sequence_number == 2
    assert [n for _, n, _ in wsfe.submitted] == [1, 2]


def test_scenario_d_concurrent_requests_are_serialized(active_config, ticket):
    wsfe = FakeWsfe(delay=0.05)
    wsfe.last[(1, 1)] = 5
    client = InvoiceAuthorizationClient(KeyedLock(), service_factory=lambda env: wsfe)
    draft = make_draft(sales_point=1, document_type=1, receiver_doc_type=80, receiver_doc_number="30712345678")
    outcomes = []
    barrier = threading.Barrier(2)

    def worker():
        barrier.wait()
        outcomes.append(client.request_authorization(active_config, ticket, draft))

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(n for _, n, _ in wsfe.submitted) == [6, 7]
    assert sorted(o.sequence_number for o in outcomes) == [6, 7]
    assert all(isinstance(o, Approval) for o in outcomes)


def test_unserialized_requests_would_collide(active_config, ticket):
    """Sin la sección exclusiva ambos leen 5 y envían 6."""

    class NoLock:
        def hold(self, key):
            return contextlib.nullcontext()

    wsfe = FakeWsfe(delay=0.05)
    wsfe.last[(1, 1)] = 5
    client = InvoiceAuthorizationClient(NoLock(), service_factory=lambda env: wsfe)
    draft = make_draft(sales_point=1, document_type=1)
    barrier = threading.Barrier(2)

    def worker():
        barrier.wait()
        client.request_authorization(active_config, ticket, draft)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [n for _, n, _ in wsfe.submitted] == [6, 6]


def test_different_keys_have_independent_sequences(client, wsfe, active_config, ticket):
    wsfe.last[(3, 6)] = 10
    wsfe.last[(3, 1)] = 100

    b = client.request_authorization(active_config, ticket, make_draft(document_type=6))
    a = client.request_authorization(active_config, ticket, make_draft(document_type=1))

    assert (b.sequence_number, a.sequence_number) == (11, 101)


# ——————————————————————————————————————————————————————————————
# Errores de transporte
# ——————————————————————————————————————————————————————————————
class Failing:
    def __init__(self, error):
        self.error = error

    def FECompUltimoAutorizado(self, **kwargs):
        raise self.error


def test_fault_is_protocol_error(active_config, ticket):
    client = InvoiceAuthorizationClient(KeyedLock(), service_factory=lambda env: Failing(Fault("Server was unable")))
    with pytest.raises(ProtocolError):
        client.get_last_authorized(active_config, ticket, 1, 1)


def test_timeout_is_transient(active_config, ticket):
    client = InvoiceAuthorizationClient(
        KeyedLock(), service_factory=lambda env: Failing(requests.exceptions.Timeout("lento"))
    )
    with pytest.raises(TransientError) as excinfo:
        client.request_authorization(active_config, ticket, make_draft())
    assert excinfo.value.document_key == (3, 6)


def test_last_authorized_errors(client, wsfe, active_config, ticket):
    wsfe.FECompUltimoAutorizado = lambda **kw: {"CbteNro": 0, "Errors": {"Err": {"Code": 600, "Msg": "No autorizado"}}}
    with pytest.raises(ProtocolError, match="600"):
        client.get_last_authorized(active_config, ticket, 3, 6)


# ——————————————————————————————————————————————————————————————
# Consultas auxiliares
# ——————————————————————————————————————————————————————————————
def test_consult_returns_snapshot(client, wsfe, active_config, ticket, draft):
    outcome = client.request_authorization(active_config, ticket, draft)

    snapshot = client.consult(active_config, ticket, 3, 6, outcome.sequence_number)

    assert snapshot.number == outcome.sequence_number
    assert snapshot.cae == outcome.cae
    assert snapshot.result == "A"
    assert snapshot.issue_date == datetime.date(2026, 3, 2)
    assert snapshot.receiver_doc_number == "30111222"


def test_consult_unknown_document(client, active_config, ticket):
    with pytest.raises(ProtocolError):
        client.consult(active_config, ticket, 3, 6, 999)


def test_server_status(client, wsfe):
    assert client.server_status("TEST").all_online
    wsfe.dummy["DbServer"] = "FAIL"
    status = client.server_status("TEST")
    assert not status.all_online
    assert status.summary()["db_server"] == "FAIL"


def test_list_sales_points(client, wsfe, active_config, ticket):
    assert client.list_sales_points(active_config, ticket) == []

    wsfe.points = [
        {"Nro": 3, "EmisionTipo": "CAE", "Bloqueado": "N", "FchBaja": "NULL"},
        {"Nro": 4, "EmisionTipo": "CAEA", "Bloqueado": "S", "FchBaja": "NULL"},
    ]
    points = client.list_sales_points(active_config, ticket)

    assert [(p.number, p.active, p.emission_kind) for p in points] == [
        (3, True, EmissionKind.CAE),
        (4, False, EmissionKind.CAEA),
    ]


def test_list_document_types(client, active_config, ticket):
    assert client.list_document_types(active_config, ticket)[0] == {"id": 1, "name": "Factura A"}
