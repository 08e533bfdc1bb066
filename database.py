# database.py
import json
import sqlite3
import logging

logger = logging.getLogger("billing_app.database")

INVOICE_COUNTER_KEY = "invoice_counter"

# Invoice columns written by add_invoice/update_invoice
INVOICE_FIELDS = (
    "customer_name", "customer_phone", "customer_address", "date", "items",
    "bill_discount", "tax_percent", "tax_amount", "product_discounts",
    "other_charges", "other_charges_label", "subtotal", "total",
    "paid_amount", "due_amount", "payment_mode", "is_paid",
)


class Database:
    """
    Manages the SQLite connection and provides methods for the shop profile,
    products, customers, invoices and key-value settings.
    """
    def __init__(self, db_name: str = "billing.db"):
        self.conn = sqlite3.connect(db_name)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        cur = self.conn.cursor()
        # Single shop profile
        cur.execute("""
        CREATE TABLE IF NOT EXISTS shop (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            name TEXT NOT NULL,
            address TEXT,
            gstin TEXT,
            proprietary_name TEXT,
            mobile_no TEXT
        )
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            price REAL NOT NULL,
            default_discount REAL NOT NULL DEFAULT 0
        )
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            phone TEXT,
            address TEXT
        )
        """)
        # Line items are kept as a JSON snapshot on the invoice row
        cur.execute("""
        CREATE TABLE IF NOT EXISTS invoices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_number TEXT UNIQUE NOT NULL,
            customer_name TEXT NOT NULL,
            customer_phone TEXT,
            customer_address TEXT,
            date TEXT NOT NULL,
            items TEXT NOT NULL,
            bill_discount REAL NOT NULL DEFAULT 0,
            tax_percent REAL NOT NULL DEFAULT 0,
            tax_amount REAL NOT NULL DEFAULT 0,
            product_discounts REAL NOT NULL DEFAULT 0,
            other_charges REAL NOT NULL DEFAULT 0,
            other_charges_label TEXT,
            subtotal REAL NOT NULL,
            total INTEGER NOT NULL,
            paid_amount REAL NOT NULL DEFAULT 0,
            due_amount REAL NOT NULL DEFAULT 0,
            payment_mode TEXT,
            is_paid INTEGER NOT NULL DEFAULT 0
        )
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """)
        self.conn.commit()

    def close(self):
        self.conn.close()

    # Key-value settings
    def get_setting(self, key: str):
        """Return the stored string for key, or None."""
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = cur.fetchone()
        return row['value'] if row else None

    def set_setting(self, key: str, value: str):
        cur = self.conn.cursor()
        cur.execute("""
        INSERT INTO settings (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """, (key, value))
        self.conn.commit()

    def delete_setting(self, key: str):
        cur = self.conn.cursor()
        cur.execute("DELETE FROM settings WHERE key = ?", (key,))
        self.conn.commit()

    # Shop operations
    def save_shop(self, name: str, address: str = None, gstin: str = None,
                  proprietary_name: str = None, mobile_no: str = None):
        """Create or replace the shop profile."""
        cur = self.conn.cursor()
        cur.execute("""
        INSERT OR REPLACE INTO shop (id, name, address, gstin, proprietary_name, mobile_no)
        VALUES (1, ?, ?, ?, ?, ?)
        """, (name, address, gstin, proprietary_name, mobile_no))
        self.conn.commit()

    def get_shop(self):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM shop WHERE id = 1")
        row = cur.fetchone()
        return dict(row) if row else None

    # Product operations
    def add_product(self, name: str, price: float, default_discount: float = 0):
        """Insert a new product and return its id."""
        cur = self.conn.cursor()
        cur.execute("""
        INSERT INTO products (name, price, default_discount)
        VALUES (?, ?, ?)
        """, (name, price, default_discount))
        self.conn.commit()
        return cur.lastrowid

    def get_product_by_id(self, product_id: int):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM products WHERE id = ?", (product_id,))
        row = cur.fetchone()
        return dict(row) if row else None

    def update_product(self, product_id: int, name: str, price: float, default_discount: float):
        cur = self.conn.cursor()
        cur.execute("""
        UPDATE products
        SET name = ?, price = ?, default_discount = ?
        WHERE id = ?
        """, (name, price, default_discount, product_id))
        self.conn.commit()
        return cur.rowcount > 0

    def delete_product(self, product_id: int):
        cur = self.conn.cursor()
        cur.execute("DELETE FROM products WHERE id = ?", (product_id,))
        self.conn.commit()
        return cur.rowcount > 0

    def search_products(self, keyword: str):
        """Search products by name."""
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM products WHERE name LIKE ? ORDER BY name",
                    (f"%{keyword}%",))
        return [dict(row) for row in cur.fetchall()]

    def list_products(self):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM products ORDER BY name")
        return [dict(row) for row in cur.fetchall()]

    # Customer operations
    def add_customer(self, name: str, phone: str = None, address: str = None):
        """
        Insert a customer unless one with the same name (case-insensitive)
        or the same phone already exists. An existing match only gains the
        phone/address it was missing. Returns the customer as a dict.
        """
        cur = self.conn.cursor()
        if phone:
            cur.execute("""
            SELECT * FROM customers WHERE lower(name) = lower(?) OR phone = ?
            ORDER BY id LIMIT 1
            """, (name, phone))
        else:
            cur.execute("""
            SELECT * FROM customers WHERE lower(name) = lower(?)
            ORDER BY id LIMIT 1
            """, (name,))
        existing = cur.fetchone()
        if existing:
            customer = dict(existing)
            if address and not customer['address']:
                customer['address'] = address
            if phone and not customer['phone']:
                customer['phone'] = phone
            cur.execute("UPDATE customers SET phone = ?, address = ? WHERE id = ?",
                        (customer['phone'], customer['address'], customer['id']))
            self.conn.commit()
            return customer

        cur.execute("INSERT INTO customers (name, phone, address) VALUES (?, ?, ?)",
                    (name, phone, address))
        self.conn.commit()
        logger.debug(f"Added customer {name!r}")
        return {'id': cur.lastrowid, 'name': name, 'phone': phone, 'address': address}

    def update_customer(self, customer_id: int, name: str, phone: str = None, address: str = None):
        cur = self.conn.cursor()
        cur.execute("UPDATE customers SET name = ?, phone = ?, address = ? WHERE id = ?",
                    (name, phone, address, customer_id))
        self.conn.commit()
        return cur.rowcount > 0

    def delete_customer(self, customer_id: int):
        cur = self.conn.cursor()
        cur.execute("DELETE FROM customers WHERE id = ?", (customer_id,))
        self.conn.commit()
        return cur.rowcount > 0

    def list_customers(self):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM customers ORDER BY name")
        return [dict(row) for row in cur.fetchall()]

    def search_customers(self, keyword: str):
        """Search customers by name or phone."""
        cur = self.conn.cursor()
        kw = f"%{keyword}%"
        cur.execute("""
        SELECT * FROM customers
        WHERE name LIKE ? OR phone LIKE ?
        ORDER BY name
        """, (kw, kw))
        return [dict(row) for row in cur.fetchall()]

    # Invoice operations
    def get_invoice_counter(self) -> int:
        value = self.get_setting(INVOICE_COUNTER_KEY)
        return int(value) if value else 1

    def add_invoice(self, data: dict):
        """
        Persist a new invoice. The invoice number is taken from the counter
        setting and the counter advanced in the same transaction.
        data: dict with the INVOICE_FIELDS keys; items is a list of dicts.
        Returns (id, invoice_number).
        """
        counter = self.get_invoice_counter()
        invoice_number = f"INV-{counter:04d}"
        values = self._invoice_values(data)
        cur = self.conn.cursor()
        try:
            cur.execute(f"""
            INSERT INTO invoices (invoice_number, {', '.join(INVOICE_FIELDS)})
            VALUES (?, {', '.join('?' for _ in INVOICE_FIELDS)})
            """, (invoice_number, *values))
            invoice_id = cur.lastrowid
            cur.execute("""
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (INVOICE_COUNTER_KEY, str(counter + 1)))
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise
        logger.info(f"Saved invoice {invoice_number}")
        return invoice_id, invoice_number

    def update_invoice(self, invoice_id: int, data: dict):
        """Replace every mutable field of an invoice. Number and id are kept."""
        cur = self.conn.cursor()
        assignments = ', '.join(f"{field} = ?" for field in INVOICE_FIELDS)
        cur.execute(f"UPDATE invoices SET {assignments} WHERE id = ?",
                    (*self._invoice_values(data), invoice_id))
        self.conn.commit()
        return cur.rowcount > 0

    def get_invoice(self, invoice_id: int):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,))
        return self._invoice_row(cur.fetchone())

    def get_invoice_by_number(self, invoice_number: str):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM invoices WHERE invoice_number = ?", (invoice_number,))
        return self._invoice_row(cur.fetchone())

    def list_invoices(self, date_from: str = None, date_to: str = None):
        """
        List invoices newest first, within an optional date range.
        Both bounds are inclusive calendar days; stored timestamps are
        compared by their date part.
        """
        cur = self.conn.cursor()
        q = "SELECT * FROM invoices"
        params = []
        if date_from and date_to:
            q += " WHERE date(date) BETWEEN date(?) AND date(?)"
            params = [date_from, date_to]
        elif date_from:
            q += " WHERE date(date) >= date(?)"
            params = [date_from]
        elif date_to:
            q += " WHERE date(date) <= date(?)"
            params = [date_to]

        q += " ORDER BY date DESC, id DESC"
        cur.execute(q, params)
        return [self._invoice_row(r) for r in cur.fetchall()]

    @staticmethod
    def _invoice_values(data: dict):
        row = dict(data)
        row['items'] = json.dumps(row.get('items', []))
        row['is_paid'] = 1 if row.get('is_paid') else 0
        return tuple(row.get(field) for field in INVOICE_FIELDS)

    @staticmethod
    def _invoice_row(row):
        if row is None:
            return None
        invoice = dict(row)
        invoice['items'] = json.loads(invoice['items'])
        invoice['is_paid'] = bool(invoice['is_paid'])
        return invoice
