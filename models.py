# models.py
import datetime
import logging
import uuid
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from billing import (BillCalculation, DiscountType, calculate_bill,
                     payment_split, validate_bill)
from database import Database

logger = logging.getLogger("billing_app.models")

PAYMENT_MODES = ["Cash", "Card", "UPI", "Bank Transfer", "Cheque"]


@dataclass
class Shop:
    name: str
    address: Optional[str] = None
    gstin: Optional[str] = None
    proprietary_name: Optional[str] = None
    mobile_no: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            name=row['name'],
            address=row['address'],
            gstin=row['gstin'],
            proprietary_name=row['proprietary_name'],
            mobile_no=row['mobile_no'],
        )


@dataclass
class Product:
    """Represents a catalog product fetched from DB."""
    id: int
    name: str
    price: float
    default_discount: float = 0

    @classmethod
    def from_row(cls, row):
        return cls(row['id'], row['name'], row['price'], row['default_discount'])


@dataclass
class Customer:
    id: int
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        return cls(row['id'], row['name'], row['phone'], row['address'])


@dataclass
class CartItem:
    """One line on a bill. discount is a percentage of qty * unit_price."""
    name: str
    qty: int
    unit_price: float
    discount: float = 0
    product_id: Optional[int] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def line_total(self):
        return self.qty * self.unit_price

    @property
    def discount_amount(self):
        return (self.discount / 100) * self.line_total

    @property
    def net_amount(self):
        return self.line_total - self.discount_amount

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict):
        return cls(
            name=data['name'],
            qty=data['qty'],
            unit_price=data['unit_price'],
            discount=data.get('discount', 0),
            product_id=data.get('product_id'),
            id=data.get('id') or uuid.uuid4().hex,
        )


@dataclass
class Invoice:
    """
    Snapshot of a finalized bill. bill_discount is the resolved currency
    amount, not the percentage the bill may have been entered with.
    invoice_number and id are None until the invoice is saved.
    """
    customer_name: str
    date: str
    items: List[CartItem]
    subtotal: float
    total: int
    bill_discount: float = 0
    tax_percent: float = 0
    tax_amount: float = 0
    product_discounts: float = 0
    other_charges: float = 0
    other_charges_label: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    paid_amount: float = 0
    due_amount: float = 0
    payment_mode: Optional[str] = None
    is_paid: bool = False
    invoice_number: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: dict):
        data = dict(row)
        data['items'] = [CartItem.from_dict(i) for i in data['items']]
        return cls(**data)

    def to_record(self):
        """Fields stored by Database.add_invoice / update_invoice."""
        data = asdict(self)
        data.pop('id')
        data.pop('invoice_number')
        return data


class Bill:
    """Holds the cart and pricing inputs of a bill being built."""
    def __init__(self):
        self.clear()

    def clear(self):
        self.items: List[CartItem] = []
        self.bill_discount = 0
        self.bill_discount_type = DiscountType.AMOUNT
        self.tax_percent = 0
        self.other_charges = 0
        self.other_charges_label = None
        self.paid_amount = 0
        self.payment_mode = "Cash"

    def add_item(self, name: str, qty: int, unit_price: float,
                 discount: float = 0, product_id: int = None) -> CartItem:
        if not name or unit_price <= 0:
            raise ValueError("Please enter valid product details.")
        item = CartItem(name=name, qty=qty, unit_price=unit_price,
                        discount=discount, product_id=product_id)
        self.items.append(item)
        return item

    def add_product(self, product: Product, qty: int = 1) -> CartItem:
        """Add a catalog product at its price and default discount."""
        return self.add_item(product.name, qty, product.price,
                             product.default_discount, product.id)

    def update_item(self, item_id: str, **changes) -> CartItem:
        for item in self.items:
            if item.id == item_id:
                for key, value in changes.items():
                    if key == 'id' or not hasattr(item, key):
                        raise ValueError(f"Cannot update cart item field {key!r}.")
                    setattr(item, key, value)
                return item
        raise ValueError("Cart item not found.")

    def remove_item(self, item_id: str):
        self.items = [ci for ci in self.items if ci.id != item_id]

    def set_discount(self, value: float, discount_type=DiscountType.AMOUNT):
        self.bill_discount = value
        self.bill_discount_type = DiscountType(discount_type)

    def calculate(self) -> BillCalculation:
        return calculate_bill(self.items, self.bill_discount, self.bill_discount_type,
                              self.tax_percent, self.other_charges)

    @property
    def due_amount(self):
        return payment_split(self.calculate().grand_total, self.paid_amount)[0]


class InvoiceService:
    """
    Coordinates shop setup, bill finalization, invoice edits and lookups.
    """
    def __init__(self, db: Database, config=None):
        self.db = db
        self.config = config or {}

    def setup_shop(self, name: str, address: str = None, gstin: str = None,
                   proprietary_name: str = None, mobile_no: str = None) -> Shop:
        name = (name or "").strip()
        if not name:
            raise ValueError("Please enter shop name.")
        self.db.save_shop(name, _clean(address), _clean(gstin),
                          _clean(proprietary_name), _clean(mobile_no))
        logger.info(f"Shop profile saved: {name}")
        return self.get_shop()

    def get_shop(self) -> Optional[Shop]:
        row = self.db.get_shop()
        return Shop.from_row(row) if row else None

    def preview(self, bill: Bill, customer_name: str, customer_phone: str = None,
                customer_address: str = None) -> Invoice:
        """Build the invoice a bill would produce, without saving it."""
        calc = bill.calculate()
        due, is_paid = payment_split(calc.grand_total, bill.paid_amount)
        return Invoice(
            customer_name=(customer_name or "").strip(),
            customer_phone=_clean(customer_phone),
            customer_address=_clean(customer_address),
            date=datetime.datetime.now().isoformat(timespec='seconds'),
            items=[CartItem(**ci.to_dict()) for ci in bill.items],
            bill_discount=calc.bill_discount,
            tax_percent=bill.tax_percent,
            tax_amount=calc.tax_amount,
            product_discounts=calc.total_product_discounts,
            other_charges=bill.other_charges,
            other_charges_label=_clean(bill.other_charges_label),
            subtotal=calc.subtotal,
            total=calc.grand_total,
            paid_amount=bill.paid_amount,
            due_amount=due,
            payment_mode=bill.payment_mode,
            is_paid=is_paid,
        )

    def save_invoice(self, bill: Bill, customer_name: str, customer_phone: str = None,
                     customer_address: str = None) -> Invoice:
        """
        Finalize a bill: validate, remember the customer, persist a numbered
        invoice and clear the bill.
        Raises ValueError if the customer name is missing or the bill is empty.
        """
        if not (customer_name or "").strip():
            raise ValueError("Please enter customer name.")
        if not bill.items:
            raise ValueError("Please add at least one product.")
        validate_bill(bill.items, bill.tax_percent, bill.other_charges, bill.paid_amount)

        invoice = self.preview(bill, customer_name, customer_phone, customer_address)
        self.db.add_customer(invoice.customer_name, invoice.customer_phone,
                             invoice.customer_address)
        invoice.id, invoice.invoice_number = self.db.add_invoice(invoice.to_record())
        bill.clear()
        return invoice

    def update_invoice(self, invoice_id: int, customer_name: str, items: List[CartItem],
                       bill_discount: float = 0, tax_percent: float = 0,
                       other_charges: float = 0, paid_amount: float = 0,
                       payment_mode: str = None, customer_phone: str = None,
                       customer_address: str = None,
                       other_charges_label: str = None) -> Invoice:
        """
        Replace a saved invoice with edited values. The stored bill discount
        is already a currency amount, so it is re-applied as a flat discount.
        Number and date are kept, as is the payment mode when none is given.
        """
        existing = self.get_invoice(invoice_id)
        if existing is None:
            raise ValueError("Invoice not found.")
        if not (customer_name or "").strip():
            raise ValueError("Please enter customer name.")
        if not items:
            raise ValueError("Please add at least one item.")
        validate_bill(items, tax_percent, other_charges, paid_amount)

        calc = calculate_bill(items, bill_discount, DiscountType.AMOUNT,
                              tax_percent, other_charges)
        due, is_paid = payment_split(calc.grand_total, paid_amount)
        updated = Invoice(
            customer_name=customer_name.strip(),
            customer_phone=_clean(customer_phone),
            customer_address=_clean(customer_address),
            date=existing.date,
            items=list(items),
            bill_discount=calc.bill_discount,
            tax_percent=tax_percent,
            tax_amount=calc.tax_amount,
            product_discounts=calc.total_product_discounts,
            other_charges=other_charges,
            other_charges_label=_clean(other_charges_label),
            subtotal=calc.subtotal,
            total=calc.grand_total,
            paid_amount=paid_amount,
            due_amount=due,
            payment_mode=payment_mode or existing.payment_mode,
            is_paid=is_paid,
            invoice_number=existing.invoice_number,
            id=existing.id,
        )
        self.db.update_invoice(invoice_id, updated.to_record())
        logger.info(f"Updated invoice {updated.invoice_number}")
        return updated

    def record_payment(self, invoice_number: str, paid_amount: float,
                       payment_mode: str = None) -> Invoice:
        """Set the total amount paid against an invoice."""
        invoice = self.get_invoice_by_number(invoice_number)
        if invoice is None:
            raise ValueError("Invoice not found.")
        return self.update_invoice(
            invoice.id, invoice.customer_name, invoice.items,
            bill_discount=invoice.bill_discount, tax_percent=invoice.tax_percent,
            other_charges=invoice.other_charges, paid_amount=paid_amount,
            payment_mode=payment_mode, customer_phone=invoice.customer_phone,
            customer_address=invoice.customer_address,
            other_charges_label=invoice.other_charges_label,
        )

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        row = self.db.get_invoice(invoice_id)
        return Invoice.from_row(row) if row else None

    def get_invoice_by_number(self, invoice_number: str) -> Optional[Invoice]:
        row = self.db.get_invoice_by_number(invoice_number)
        return Invoice.from_row(row) if row else None

    def list_invoices(self) -> List[Invoice]:
        return [Invoice.from_row(row) for row in self.db.list_invoices()]

    def search_invoices(self, query: str) -> List[Invoice]:
        """Match customer name or invoice number (case-insensitive) or phone."""
        invoices = self.list_invoices()
        query = (query or "").strip()
        if not query:
            return invoices
        q = query.lower()
        return [
            inv for inv in invoices
            if q in inv.customer_name.lower()
            or q in inv.invoice_number.lower()
            or (inv.customer_phone is not None and query in inv.customer_phone)
        ]

    def dashboard_stats(self, recent: int = 5):
        invoices = self.list_invoices()
        return {
            'total_invoices': len(invoices),
            'total_revenue': sum(inv.total for inv in invoices),
            'total_products': len(self.db.list_products()),
            'recent_invoices': invoices[:recent],
        }


def _clean(value):
    """Blank strings become None so optional fields are either set or absent."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None
