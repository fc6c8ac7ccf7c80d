from .catalog import Product, Employee, Customer
from .counters import Counter
from .transactions import Sale, SaleItem, EmployeeSale, EmployeeSaleItem, CylinderTransaction, PurchaseOrder
from .stock import StockAssignment, EmployeeInventory, ReturnTransaction
from .aggregates import DailyAggregate

__all__ = [
    'Product', 'Employee', 'Customer',
    'Counter',
    'Sale', 'SaleItem', 'EmployeeSale', 'EmployeeSaleItem', 'CylinderTransaction', 'PurchaseOrder',
    'StockAssignment', 'EmployeeInventory', 'ReturnTransaction',
    'DailyAggregate',
]
