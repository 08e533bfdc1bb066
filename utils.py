# utils.py
import datetime
import logging
from xml.sax.saxutils import escape

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer

from database import Database

logger = logging.getLogger("billing_app.utils")

# The built-in PDF fonts have no rupee glyph
PDF_CURRENCY = "Rs. "


def format_currency(amount: float, currency: str = "₹") -> str:
    """Two decimals, no grouping. Example: 1234.5 -> "₹1234.50"."""
    return f"{currency}{amount:.2f}"


def _to_datetime(value):
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.datetime.fromtimestamp(value / 1000)
    return datetime.datetime.fromisoformat(value)


def format_date(value) -> str:
    """DD/MM/YYYY from a datetime, ISO string or epoch milliseconds."""
    return _to_datetime(value).strftime("%d/%m/%Y")


def _totals_rows(invoice, currency):
    rows = [("Subtotal:", format_currency(invoice.subtotal, currency))]
    if invoice.product_discounts > 0:
        rows.append(("Item Discounts:", f"-{format_currency(invoice.product_discounts, currency)}"))
    if invoice.bill_discount > 0:
        rows.append(("Bill Discount:", f"-{format_currency(invoice.bill_discount, currency)}"))
    if invoice.tax_percent > 0:
        rows.append((f"Tax ({invoice.tax_percent:g}%):", format_currency(invoice.tax_amount, currency)))
    if invoice.other_charges > 0:
        label = invoice.other_charges_label or "Other Charges"
        rows.append((f"{label}:", format_currency(invoice.other_charges, currency)))
    rows.append(("Grand Total:", format_currency(invoice.total, currency)))
    return rows


def _payment_rows(invoice, currency):
    rows = []
    if invoice.paid_amount:
        rows.append(("Paid:", format_currency(invoice.paid_amount, currency)))
    if invoice.due_amount > 0:
        rows.append(("Due:", format_currency(invoice.due_amount, currency)))
    if invoice.payment_mode:
        rows.append(("Payment Mode:", invoice.payment_mode))
    return rows


def generate_txt_invoice(invoice, shop, file_path: str, currency="₹"):
    """Write a plain-text invoice."""
    with open(file_path, 'w', encoding='utf-8') as f:
        f.write(f"{shop.name}\n")
        if shop.address:
            f.write(f"{shop.address}\n")
        if shop.gstin:
            f.write(f"GSTIN: {shop.gstin}\n")
        f.write("-" * 44 + "\n")
        f.write(f"Invoice No: {invoice.invoice_number or 'PREVIEW'}\n")
        f.write(f"Date: {format_date(invoice.date)}\n")
        f.write(f"Bill To: {invoice.customer_name}\n")
        if invoice.customer_phone:
            f.write(f"Phone: {invoice.customer_phone}\n")
        f.write("-" * 44 + "\n")
        f.write("Item            QTY     Price  Disc     Amount\n")
        for item in invoice.items:
            f.write(f"{item.name[:15]:15} {item.qty:3} {item.unit_price:9.2f} "
                    f"{item.discount:4g}% {item.net_amount:10.2f}\n")
        f.write("-" * 44 + "\n")
        for label, value in _totals_rows(invoice, currency) + _payment_rows(invoice, currency):
            f.write(f"{label:<20}{value:>24}\n")
        if invoice.is_paid:
            f.write("PAID\n")
        f.write("-" * 44 + "\n")
        f.write("Thank you for your business!\n")
    return file_path


def generate_pdf_invoice(invoice, shop, file_path: str, currency=PDF_CURRENCY):
    """Render an invoice to PDF using ReportLab."""
    doc = SimpleDocTemplate(file_path, pagesize=A4)
    elements = []

    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name='InvoiceCenter', parent=styles['Normal'], alignment=1))
    styles.add(ParagraphStyle(name='InvoiceRight', parent=styles['Normal'], alignment=2))

    # Shop header
    elements.append(Paragraph(escape(shop.name), ParagraphStyle(
        name='ShopName', parent=styles['Heading1'], alignment=1)))
    for line in (shop.address,
                 f"GSTIN: {shop.gstin}" if shop.gstin else None,
                 f"Proprietor: {shop.proprietary_name}" if shop.proprietary_name else None,
                 f"Mobile: {shop.mobile_no}" if shop.mobile_no else None):
        if line:
            elements.append(Paragraph(escape(line), styles['InvoiceCenter']))
    elements.append(Spacer(1, 0.3 * inch))

    elements.append(Paragraph(
        f"<b>Invoice No:</b> {invoice.invoice_number or 'PREVIEW'}<br/>"
        f"<b>Date:</b> {format_date(invoice.date)}", styles['Normal']))
    elements.append(Spacer(1, 0.2 * inch))

    bill_to = f"<b>Bill To:</b><br/>{escape(invoice.customer_name)}"
    if invoice.customer_phone:
        bill_to += f"<br/>Phone: {escape(invoice.customer_phone)}"
    if invoice.customer_address:
        bill_to += f"<br/>{escape(invoice.customer_address)}"
    elements.append(Paragraph(bill_to, styles['Normal']))
    elements.append(Spacer(1, 0.2 * inch))

    data = [["Item", "Qty", "Price", "Discount", "Amount"]]
    for item in invoice.items:
        data.append([item.name, str(item.qty), format_currency(item.unit_price, currency),
                     f"{item.discount:g}%", format_currency(item.net_amount, currency)])
    table = Table(data, colWidths=[2.6*inch, 0.7*inch, 1.1*inch, 0.9*inch, 1.2*inch])
    table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('BOTTOMPADDING', (0, 0), (-1, 0), 10),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.black),
        ('ALIGN', (1, 1), (-1, -1), 'RIGHT'),
    ]))
    elements.append(table)
    elements.append(Spacer(1, 0.3 * inch))

    totals = [list(row) for row in _totals_rows(invoice, currency)]
    totals_table = Table(totals, colWidths=[1.8*inch, 1.4*inch], hAlign='RIGHT')
    totals_table.setStyle(TableStyle([
        ('ALIGN', (1, 0), (1, -1), 'RIGHT'),
        ('LINEABOVE', (0, -1), (-1, -1), 1.5, colors.black),
        ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
    ]))
    elements.append(totals_table)

    payment = [list(row) for row in _payment_rows(invoice, currency)]
    if payment:
        elements.append(Spacer(1, 0.2 * inch))
        payment_table = Table(payment, colWidths=[1.8*inch, 1.4*inch], hAlign='RIGHT')
        payment_table.setStyle(TableStyle([('ALIGN', (1, 0), (1, -1), 'RIGHT')]))
        elements.append(payment_table)
    if invoice.is_paid:
        elements.append(Spacer(1, 0.2 * inch))
        elements.append(Paragraph("<b>PAID</b>", styles['InvoiceRight']))

    elements.append(Spacer(1, 0.5 * inch))
    elements.append(Paragraph("Thank you for your business!", styles['InvoiceCenter']))

    doc.build(elements)
    logger.info(f"Invoice PDF written to {file_path}")
    return file_path


def invoices_dataframe(db: Database) -> pd.DataFrame:
    """One row per invoice, without the line items."""
    rows = db.list_invoices()
    df = pd.DataFrame(rows)
    if not df.empty:
        df['item_count'] = df['items'].apply(len)
        df = df.drop(columns=['items'])
    return df


def export_invoices_csv(db: Database, file_path: str):
    invoices_dataframe(db).to_csv(file_path, index=False)
    return file_path


def export_invoices_excel(db: Database, file_path: str):
    try:
        invoices_dataframe(db).to_excel(file_path, index=False, sheet_name='Invoices')
        return file_path
    except Exception as e:
        raise Exception(f"Failed to export to Excel: {str(e)}")


def _import_products(db: Database, df: pd.DataFrame):
    """Upsert products by name from a frame with name, price[, default_discount]."""
    existing = {p['name'].lower(): p for p in db.list_products()}
    for _, row in df.iterrows():
        name = str(row['name']).strip()
        price = float(row['price'])
        discount = float(row['default_discount']) if 'default_discount' in df.columns \
            and pd.notna(row['default_discount']) else 0.0
        match = existing.get(name.lower())
        if match:
            db.update_product(match['id'], name, price, discount)
        else:
            product_id = db.add_product(name, price, discount)
            existing[name.lower()] = {'id': product_id, 'name': name}
    return len(df)


def import_products_csv(db: Database, file_path: str):
    """
    Read CSV with columns name,price[,default_discount]
    and upsert into the products table.
    """
    return _import_products(db, pd.read_csv(file_path))


def import_products_excel(db: Database, file_path: str):
    try:
        return _import_products(db, pd.read_excel(file_path))
    except Exception as e:
        raise Exception(f"Failed to import from Excel: {str(e)}")


def generate_sales_report(db: Database, start_date=None, end_date=None, file_path=None, format='csv'):
    """Summarize invoices in a date range, optionally exporting them."""
    invoices = db.list_invoices(start_date, end_date)
    if not invoices:
        return None, "No invoices found for the specified period."

    df = pd.DataFrame(invoices).drop(columns=['items'])
    df['date'] = pd.to_datetime(df['date'])

    summary = {
        'total_sales': df['total'].sum(),
        'average_sale': df['total'].mean(),
        'num_invoices': len(df),
        'total_due': df['due_amount'].sum(),
        'unpaid_invoices': int((~df['is_paid']).sum()),
        'start_date': start_date or df['date'].min().date(),
        'end_date': end_date or df['date'].max().date(),
    }

    if file_path:
        if format.lower() == 'excel':
            df.to_excel(file_path, index=False, sheet_name='Sales')
        else:
            df.to_csv(file_path, index=False)

    return df, summary
