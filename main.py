# main.py
import os
import sys
import json
import logging
import argparse
from pathlib import Path

from database import Database
from licensing import LicenseService, DeviceIdentityProvider
from license_store import FirestoreLicenseStore
from logger import setup_logger
from models import Bill, InvoiceService, Product, PAYMENT_MODES
from billing import DiscountType
from utils import (format_currency, format_date, generate_pdf_invoice, generate_txt_invoice,
                   export_invoices_csv, export_invoices_excel, import_products_csv,
                   import_products_excel, generate_sales_report)

logger = logging.getLogger("billing_app.main")

# Default configuration
DEFAULT_CONFIG = {
    "database": {"name": "billing.db"},
    "invoice": {"invoice_dir": "invoices"},
    "export": {"default_dir": "exports"},
    "currency": "₹",
    "logging": {"level": "INFO", "file": "logs/billing.log"},
    "license": {
        "project_id": "",
        "api_key": "",
        "collection": "licenses",
        "timeout": 15
    }
}

# Commands that run before a license is in place
UNGATED_COMMANDS = {"activate", "deactivate"}

SHOP_REQUIRED = "Set up the shop profile first (shop --name ...)."


def load_config(config_path="config.json"):
    """Load configuration from JSON file or create default if not exists"""
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config = json.load(f)
            return {**DEFAULT_CONFIG, **config}
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error loading config {config_path}: {e}", file=sys.stderr)
            return dict(DEFAULT_CONFIG)

    with open(config_path, 'w', encoding='utf-8') as f:
        json.dump(DEFAULT_CONFIG, f, indent=4, ensure_ascii=False)
    return dict(DEFAULT_CONFIG)


def setup_directories(config):
    """Create required directories if they don't exist."""
    dir_mappings = {
        'invoice_dir': config.get('invoice', {}).get('invoice_dir', 'invoices'),
        'export_dir': config.get('export', {}).get('default_dir', 'exports'),
    }
    for dir_key, dir_path in dir_mappings.items():
        path = Path(dir_path)
        if not path.exists():
            path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created directory: {path}")


def build_license_service(config, db: Database) -> LicenseService:
    """
    The remote store client is created once, on the first command that needs
    it, so local-only commands work before the store is configured.
    """
    license_config = config.get("license", {})

    def build_store():
        return FirestoreLicenseStore(
            project_id=license_config.get("project_id"),
            api_key=license_config.get("api_key") or None,
            collection=license_config.get("collection", "licenses"),
            timeout=license_config.get("timeout", 15),
        )

    return LicenseService(build_store, db, DeviceIdentityProvider(db))


def parse_item(text: str):
    """Parse NAME:QTY:PRICE[:DISCOUNT] into cart item arguments."""
    parts = text.rsplit(":", 3)
    if len(parts) < 3:
        raise ValueError(f"Item must look like NAME:QTY:PRICE[:DISCOUNT], got {text!r}")
    if len(parts) == 4:
        name, qty, price, discount = parts
    else:
        (name, qty, price), discount = parts, 0
    return name.strip(), int(qty), float(price), float(discount)


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(description="Small-business invoicing")
    parser.add_argument("--config", help="Path to configuration file", default="config.json")
    parser.add_argument("--debug", help="Enable debug mode", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("activate", help="Activate a license on this device")
    p.add_argument("phone")
    p.add_argument("key")
    sub.add_parser("deactivate", help="Forget the saved license on this device")
    sub.add_parser("status", help="Check the saved license")

    p = sub.add_parser("shop", help="Show or set up the shop profile")
    p.add_argument("--name")
    p.add_argument("--address")
    p.add_argument("--gstin")
    p.add_argument("--proprietor")
    p.add_argument("--mobile")

    p = sub.add_parser("product-add", help="Add a catalog product")
    p.add_argument("name")
    p.add_argument("price", type=float)
    p.add_argument("--discount", type=float, default=0)

    p = sub.add_parser("products", help="List catalog products")
    p.add_argument("--search")

    p = sub.add_parser("customers", help="List customers")
    p.add_argument("--search")

    p = sub.add_parser("bill", help="Create and save an invoice")
    p.add_argument("--customer", required=True)
    p.add_argument("--phone")
    p.add_argument("--address")
    p.add_argument("--item", action="append", default=[], help="NAME:QTY:PRICE[:DISCOUNT]")
    p.add_argument("--product", action="append", default=[], help="PRODUCT_ID[:QTY]")
    p.add_argument("--discount", type=float, default=0)
    p.add_argument("--discount-type", choices=[t.value for t in DiscountType],
                   default=DiscountType.AMOUNT.value)
    p.add_argument("--tax", type=float, default=0)
    p.add_argument("--charges", type=float, default=0)
    p.add_argument("--charges-label")
    p.add_argument("--paid", type=float, default=0)
    p.add_argument("--mode", choices=PAYMENT_MODES, default="Cash")
    p.add_argument("--pdf", action="store_true", help="Also render the invoice PDF")

    p = sub.add_parser("invoices", help="List or search invoices")
    p.add_argument("--search")

    p = sub.add_parser("pay", help="Record the amount paid on an invoice")
    p.add_argument("invoice_number")
    p.add_argument("amount", type=float)
    p.add_argument("--mode", choices=PAYMENT_MODES)

    p = sub.add_parser("pdf", help="Render an invoice to a file")
    p.add_argument("invoice_number")
    p.add_argument("--txt", action="store_true", help="Plain text instead of PDF")

    p = sub.add_parser("export", help="Export invoices")
    p.add_argument("--format", choices=["csv", "excel"], default="csv")

    p = sub.add_parser("import-products", help="Import products from CSV or Excel")
    p.add_argument("file")

    p = sub.add_parser("report", help="Sales summary for a date range")
    p.add_argument("--start")
    p.add_argument("--end")

    sub.add_parser("stats", help="Dashboard totals")
    return parser.parse_args(argv)


def render_invoice(service: InvoiceService, config, invoice, txt=False):
    shop = service.get_shop()
    if shop is None:
        raise ValueError(SHOP_REQUIRED)
    out_dir = Path(config.get('invoice', {}).get('invoice_dir', 'invoices'))
    if txt:
        return generate_txt_invoice(invoice, shop, str(out_dir / f"{invoice.invoice_number}.txt"),
                                    currency=config.get("currency", "₹"))
    return generate_pdf_invoice(invoice, shop, str(out_dir / f"{invoice.invoice_number}.pdf"))


def run_command(args, config, db: Database, licenses: LicenseService):
    currency = config.get("currency", "₹")
    service = InvoiceService(db, config)

    if args.command == "activate":
        result = licenses.validate_and_bind_license(args.phone.strip(), args.key.strip())
        print("License activated." if result.ok else f"Activation failed: {result.reason}")
        return 0 if result.ok else 2
    if args.command == "deactivate":
        licenses.clear_local()
        print("Saved license removed.")
        return 0

    status = licenses.check_license_status()
    if not status.ok:
        print(f"License check failed: {status.reason}")
        print("Run 'activate PHONE KEY' or contact support.")
        return 2
    if args.command == "status":
        print("License OK.")
        return 0

    if args.command == "shop":
        if args.name:
            shop = service.setup_shop(args.name, args.address, args.gstin,
                                      args.proprietor, args.mobile)
        else:
            shop = service.get_shop()
        if shop is None:
            print("No shop profile yet. Use: shop --name NAME")
            return 1
        print(f"{shop.name}  {shop.address or ''}  {shop.gstin or ''}".rstrip())
    elif args.command == "product-add":
        product_id = db.add_product(args.name, args.price, args.discount)
        print(f"Added product #{product_id}: {args.name}")
    elif args.command == "products":
        rows = db.search_products(args.search) if args.search else db.list_products()
        for p in rows:
            print(f"#{p['id']:<4} {p['name']:<30} {format_currency(p['price'], currency):>12} "
                  f"{p['default_discount']:g}%")
    elif args.command == "customers":
        rows = db.search_customers(args.search) if args.search else db.list_customers()
        for c in rows:
            print(f"#{c['id']:<4} {c['name']:<30} {c['phone'] or '':<15} {c['address'] or ''}")
    elif args.command == "bill":
        if args.pdf and service.get_shop() is None:
            raise ValueError(SHOP_REQUIRED)
        bill = Bill()
        for text in args.item:
            name, qty, price, discount = parse_item(text)
            bill.add_item(name, qty, price, discount)
        for text in args.product:
            product_id, _, qty = text.partition(":")
            row = db.get_product_by_id(int(product_id))
            if row is None:
                raise ValueError(f"Product #{product_id} not found.")
            bill.add_product(Product.from_row(row), int(qty or 1))
        bill.set_discount(args.discount, args.discount_type)
        bill.tax_percent = args.tax
        bill.other_charges = args.charges
        bill.other_charges_label = args.charges_label
        bill.paid_amount = args.paid
        bill.payment_mode = args.mode
        invoice = service.save_invoice(bill, args.customer, args.phone, args.address)
        print(f"Saved {invoice.invoice_number}: total {format_currency(invoice.total, currency)}, "
              f"due {format_currency(invoice.due_amount, currency)}")
        if args.pdf:
            print(render_invoice(service, config, invoice))
    elif args.command == "invoices":
        for inv in service.search_invoices(args.search or ""):
            status_text = "PAID" if inv.is_paid else f"due {format_currency(inv.due_amount, currency)}"
            print(f"{inv.invoice_number}  {format_date(inv.date)}  {inv.customer_name:<25} "
                  f"{format_currency(inv.total, currency):>12}  {status_text}")
    elif args.command == "pay":
        invoice = service.record_payment(args.invoice_number, args.amount, args.mode)
        print(f"{invoice.invoice_number}: paid {format_currency(invoice.paid_amount, currency)}, "
              f"due {format_currency(invoice.due_amount, currency)}")
    elif args.command == "pdf":
        invoice = service.get_invoice_by_number(args.invoice_number)
        if invoice is None:
            print(f"Invoice {args.invoice_number} not found.")
            return 1
        print(render_invoice(service, config, invoice, txt=args.txt))
    elif args.command == "export":
        out_dir = Path(config.get('export', {}).get('default_dir', 'exports'))
        if args.format == "excel":
            print(export_invoices_excel(db, str(out_dir / "invoices.xlsx")))
        else:
            print(export_invoices_csv(db, str(out_dir / "invoices.csv")))
    elif args.command == "import-products":
        if args.file.lower().endswith((".xlsx", ".xls")):
            count = import_products_excel(db, args.file)
        else:
            count = import_products_csv(db, args.file)
        print(f"Imported {count} products.")
    elif args.command == "report":
        _, summary = generate_sales_report(db, args.start, args.end)
        if isinstance(summary, str):
            print(summary)
        else:
            for key, value in summary.items():
                print(f"{key.replace('_', ' ').title():<18} {value}")
    elif args.command == "stats":
        stats = service.dashboard_stats()
        print(f"Invoices: {stats['total_invoices']}")
        print(f"Revenue:  {format_currency(stats['total_revenue'], currency)}")
        print(f"Products: {stats['total_products']}")
        for inv in stats['recent_invoices']:
            print(f"  {inv.invoice_number}  {inv.customer_name}  "
                  f"{format_currency(inv.total, currency)}")
    return 0


def main(argv=None):
    db = None
    try:
        args = parse_arguments(argv)
        config = load_config(args.config)
        if args.debug:
            config["logging"] = {**config.get("logging", {}), "level": "DEBUG"}
        setup_logger(config)
        setup_directories(config)

        db_path = config.get("database", {}).get("name", "billing.db")
        db = Database(db_path)
        logger.debug(f"Database initialized: {db_path}")

        licenses = build_license_service(config, db)
        return run_command(args, config, db, licenses)
    except ValueError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        if db is not None:
            db.close()


if __name__ == "__main__":
    sys.exit(main())
