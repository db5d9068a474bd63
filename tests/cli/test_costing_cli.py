"""
Tests for the operator CLI (scripts/costing_cli.py) against a SQLite file.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from costing_kernel.db.engine import init_engine_from_url, reset_engine, session_scope
from costing_kernel.models import ProductModel, SalesInvoiceLineModel, SalesInvoiceModel
from costing_services import FifoCostingService, StockLotService
from scripts.costing_cli import main


@pytest.fixture
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'costing.db'}"
    assert main(["--db-url", url, "init-db"]) == 0
    return url


def _add_sale(session, product_id, quantity, issue_date):
    invoice = SalesInvoiceModel(invoice_number=f"INV-{uuid4().hex[:10]}", issue_date=issue_date)
    line = SalesInvoiceLineModel(product_id=product_id, quantity=Decimal(quantity))
    invoice.lines.append(line)
    session.add(invoice)
    session.flush()
    return line


@pytest.fixture
def seeded_product(db_url):
    """Lot of 10 @ 5, two costed sales, then an uncosted backdated sale."""
    init_engine_from_url(db_url)
    try:
        with session_scope() as session:
            product = ProductModel(name="Widget", cost=Decimal("2"))
            session.add(product)
            session.flush()
            StockLotService(session).create_purchase_lot(
                product.id, uuid4(), "10", "5", date(2024, 1, 1)
            )
            fifo = FifoCostingService(session)
            for quantity, day in (("4", 10), ("4", 20)):
                line = _add_sale(session, product.id, quantity, date(2024, 1, day))
                fifo.cost_sale_line(line.id)
            _add_sale(session, product.id, "3", date(2024, 1, 5))
            product_id = product.id
    finally:
        reset_engine()
    return product_id


class TestCli:

    def test_requires_database_url(self, monkeypatch, capsys):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        assert main(["init-db"]) == 2
        assert "no database URL" in capsys.readouterr().err

    def test_bad_config_file(self, db_url, tmp_path, capsys):
        code = main(["--db-url", db_url, "--config", str(tmp_path / "missing.yaml"), "init-db"])

        assert code == 2

    def test_recalculate(self, db_url, seeded_product, capsys):
        code = main([
            "--db-url", db_url,
            "recalculate",
            "--product-id", str(seeded_product),
            "--from-date", "2024-01-05",
            "--triggered-by", "test",
        ])

        assert code == 0
        out = capsys.readouterr().out
        assert "3 line(s) replayed, 2 cost change(s)" in out
        assert "warning: Product \"Widget\" only has" in out

        assert main(["--db-url", db_url, "audit", "--product-id", str(seeded_product)]) == 0
        audit_out = capsys.readouterr().out
        assert audit_out.count("recalculation; test") == 2

    def test_dry_run_rolls_back(self, db_url, seeded_product, capsys):
        code = main([
            "--db-url", db_url,
            "recalculate",
            "--product-id", str(seeded_product),
            "--from-date", "2024-01-05",
            "--dry-run",
        ])

        assert code == 0
        assert "Dry run" in capsys.readouterr().out
        main(["--db-url", db_url, "audit"])
        assert "No cost changes recorded." in capsys.readouterr().out

    def test_recalculate_all(self, db_url, seeded_product, capsys):
        assert main(["--db-url", db_url, "recalculate-all"]) == 0
        assert str(seeded_product) in capsys.readouterr().out

    def test_unknown_product_fails(self, db_url, capsys):
        code = main([
            "--db-url", db_url,
            "recalculate",
            "--product-id", str(uuid4()),
            "--from-date", "2024-01-05",
        ])

        assert code == 1
        assert "PRODUCT_NOT_FOUND" in capsys.readouterr().err

    def test_stock(self, db_url, seeded_product, capsys):
        assert main(["--db-url", db_url, "stock", "--product-id", str(seeded_product)]) == 0
        out = capsys.readouterr().out
        assert "Widget" in out
        assert "PURCHASE" in out

    def test_stock_unknown_product(self, db_url, capsys):
        assert main(["--db-url", db_url, "stock", "--product-id", str(uuid4())]) == 1
