from io import BytesIO
from openpyxl import Workbook

from .schemas import OrderView

HEADERS = ["invoice_number","created_at","payment_method","payment_status","state","serial_number","qty","unit_price","discount_amount","discount_percent","final_amount"]

def order_rows(views: list[OrderView]):
    # one row per line; pending money fields keep their "Pending" placeholder
    for v in views:
        created = v.created_at.strftime("%Y-%m-%d %H:%M") if v.created_at else ""
        for ln in v.lines:
            yield [v.invoice_number or str(v.id), created, v.payment_method, v.payment_status, v.state,
                   ln.serial_number or "", ln.quantity, ln.unit_price, ln.discount_amount, ln.discount_percent, ln.final_amount]

def orders_to_excel(views: list[OrderView]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "orders"
    ws.append(HEADERS)
    for row in order_rows(views):
        ws.append(row)
    out = BytesIO()
    wb.save(out)
    return out.getvalue()
