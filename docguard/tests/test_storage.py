import pytest

from docguard.errors import TenantIsolationViolation
from docguard.storage import UploadStorage, sanitize_filename, storage_name_for
from docguard.tenant_context import Scope

SCOPE = Scope("acme", "sales")


def test_safe_names_are_kept_as_is():
    assert storage_name_for("orders.csv") == "orders.csv"
    assert storage_name_for("Q1_report.csv") == "Q1_report.csv"


def test_names_differing_in_punctuation_or_case_get_distinct_refs(tmp_path):
    storage = UploadStorage(tmp_path)
    names = ["Q1 report.csv", "Q1_report.csv", "Q1 report!.csv", "q1 report.CSV", "q1_report.csv"]

    refs = [storage.storage_ref_for(SCOPE, name) for name in names]

    assert len(set(refs)) == len(names)
    assert all(ref.startswith("acme/sales/") for ref in refs)
    assert all(ref.endswith(".csv") for ref in refs)
    assert refs[0] != "acme/sales/" + sanitize_filename(names[0])


def test_storage_names_are_stable():
    assert storage_name_for("Q1 report.csv") == storage_name_for("Q1 report.csv")


def test_path_components_do_not_merge_names():
    assert storage_name_for("a/b.csv") != storage_name_for("c/b.csv")
    assert "/" not in storage_name_for("../../etc/passwd")


def test_write_read_and_delete_round_trip(tmp_path):
    storage = UploadStorage(tmp_path)
    ref = storage.storage_ref_for(SCOPE, "Q1 report.csv")

    storage.write(SCOPE, ref, b"a,b\n1,2\n")

    assert storage.read(SCOPE, ref) == b"a,b\n1,2\n"
    assert storage.delete(SCOPE, ref) is True
    assert storage.delete(SCOPE, ref) is False


def test_refs_outside_scope_are_refused(tmp_path):
    storage = UploadStorage(tmp_path)

    with pytest.raises(TenantIsolationViolation):
        storage.write(SCOPE, "globex/sales/orders.csv", b"x")
