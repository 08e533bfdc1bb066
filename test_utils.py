import datetime
import os
import tempfile
import unittest

import pandas as pd

from database import Database
from models import Bill, InvoiceService, Shop
from utils import (export_invoices_csv, format_currency, format_date, generate_pdf_invoice,
                   generate_sales_report, generate_txt_invoice, import_products_csv)


class FormattingTest(unittest.TestCase):
    def test_format_currency(self):
        self.assertEqual(format_currency(1234.5), "₹1234.50")
        self.assertEqual(format_currency(0), "₹0.00")
        self.assertEqual(format_currency(-40, "Rs. "), "Rs. -40.00")

    def test_format_date(self):
        self.assertEqual(format_date("2025-03-07T18:30:00"), "07/03/2025")
        self.assertEqual(format_date(datetime.datetime(2024, 12, 31)), "31/12/2024")
        ms = datetime.datetime(2025, 1, 2, 12, 0).timestamp() * 1000
        self.assertEqual(format_date(ms), "02/01/2025")


class InvoiceFilesTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database(":memory:")
        self.service = InvoiceService(self.db)
        self.shop = Shop("Sri Stores", address="12 Market Road", gstin="29AAAAA0000A1Z5")
        bill = Bill()
        bill.add_item("Chair", 2, 500, 10)
        bill.set_discount(50, "amount")
        bill.tax_percent = 5
        bill.other_charges = 20
        bill.other_charges_label = "Delivery"
        bill.paid_amount = 100
        self.invoice = self.service.save_invoice(bill, "Meena", "9000000003")

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def path(self, name):
        return os.path.join(self.tmp.name, name)

    def test_txt_invoice(self):
        generate_txt_invoice(self.invoice, self.shop, self.path("inv.txt"))
        with open(self.path("inv.txt"), encoding="utf-8") as f:
            text = f.read()
        self.assertIn("Invoice No: INV-0001", text)
        self.assertIn("Delivery:", text)
        self.assertIn(format_currency(self.invoice.total), text)
        self.assertIn("Due:", text)

    def test_pdf_invoice(self):
        path = generate_pdf_invoice(self.invoice, self.shop, self.path("inv.pdf"))
        with open(path, "rb") as f:
            self.assertEqual(f.read(4), b"%PDF")

    def test_export_csv(self):
        export_invoices_csv(self.db, self.path("invoices.csv"))
        df = pd.read_csv(self.path("invoices.csv"))
        self.assertEqual(df.loc[0, "invoice_number"], "INV-0001")
        self.assertEqual(df.loc[0, "item_count"], 1)
        self.assertNotIn("items", df.columns)

    def test_import_products_upserts_by_name(self):
        self.db.add_product("Chair", 400)
        pd.DataFrame([
            {"name": "Chair", "price": 500, "default_discount": 5},
            {"name": "Table", "price": 1500, "default_discount": None},
        ]).to_csv(self.path("products.csv"), index=False)
        self.assertEqual(import_products_csv(self.db, self.path("products.csv")), 2)
        products = {p["name"]: p for p in self.db.list_products()}
        self.assertEqual(len(products), 2)
        self.assertEqual(products["Chair"]["price"], 500)
        self.assertEqual(products["Table"]["default_discount"], 0)

    def test_sales_report(self):
        df, summary = generate_sales_report(self.db)
        self.assertEqual(len(df), 1)
        self.assertEqual(summary["num_invoices"], 1)
        self.assertEqual(summary["total_sales"], self.invoice.total)
        self.assertEqual(summary["unpaid_invoices"], 1)

    def test_sales_report_includes_invoices_on_end_date(self):
        day = self.invoice.date[:10]
        df, summary = generate_sales_report(self.db, day, day)
        self.assertEqual(summary["num_invoices"], 1)

    def test_sales_report_empty_range(self):
        df, message = generate_sales_report(self.db, "1999-01-01", "1999-12-31")
        self.assertIsNone(df)
        self.assertIsInstance(message, str)


if __name__ == "__main__":
    unittest.main()
