"""Tests for tenant / link-state partitioning."""

from recon_engines.matching.partition import partition_by_link_state
from recon_engines.matching.types import LinkState
from tests.conftest import make_doc, make_tx


class TestPartitionByLinkState:

    def test_paired_tenant_goes_to_doc_tx(self):
        parts = partition_by_link_state([make_doc()], [make_tx()])
        assert [d.id for d in parts.doc_tx_docs] == ["doc-1"]
        assert [t.id for t in parts.doc_tx_txs] == ["tx-1"]
        assert parts.doc_only == ()
        assert parts.tx_only == ()
        assert parts.meta.tenant_count == 1

    def test_unpaired_tenants_go_to_lifecycle_buckets(self):
        docs = [make_doc("d-a", tenant_id="a")]
        txs = [make_tx("t-b", tenant_id="b")]
        parts = partition_by_link_state(docs, txs)
        assert [d.id for d in parts.doc_only] == ["d-a"]
        assert [t.id for t in parts.tx_only] == ["t-b"]
        assert parts.meta.tenant_count == 2

    def test_linked_entities_are_skipped(self):
        docs = [make_doc("linked", link_state=LinkState.LINKED), make_doc("open")]
        txs = [make_tx(link_state=LinkState.LINKED)]
        parts = partition_by_link_state(docs, txs)
        assert [d.id for d in parts.doc_only] == ["open"]
        assert parts.tx_only == ()
        assert parts.meta.skipped_docs == 1
        assert parts.meta.skipped_txs == 1

    def test_partial_and_suggested_are_matchable(self):
        docs = [make_doc("p", link_state=LinkState.PARTIAL)]
        txs = [make_tx(link_state=LinkState.SUGGESTED)]
        parts = partition_by_link_state(docs, txs)
        assert len(parts.doc_tx_docs) == 1
        assert len(parts.doc_tx_txs) == 1

    def test_blank_and_missing_tenant_share_a_bucket(self):
        parts = partition_by_link_state(
            [make_doc(tenant_id=None)], [make_tx(tenant_id="  ")],
        )
        assert len(parts.doc_tx_docs) == 1
        assert len(parts.doc_tx_txs) == 1

    def test_input_order_preserved(self):
        docs = [make_doc(f"d{i}") for i in range(5)]
        parts = partition_by_link_state(docs, [make_tx()])
        assert [d.id for d in parts.doc_tx_docs] == ["d0", "d1", "d2", "d3", "d4"]
