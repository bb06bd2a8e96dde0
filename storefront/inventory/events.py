"""
Inventory Service — イベント定義

在庫ドメインで発生するイベント。金額はセント単位の整数で記録する。
"""

from datetime import datetime

from pydantic import BaseModel


class SweetAdded(BaseModel):
    """商品がカタログに追加された"""
    sweet_id: str
    name: str
    category: str
    price_cents: int
    quantity: int
    timestamp: datetime


class SweetUpdated(BaseModel):
    """商品情報が変更された (変更されたフィールドのみ)"""
    sweet_id: str
    changes: dict
    timestamp: datetime


class SweetRemoved(BaseModel):
    sweet_id: str
    timestamp: datetime


class StockRestocked(BaseModel):
    """在庫が補充された"""
    sweet_id: str
    quantity: int
    quantity_after: int
    timestamp: datetime


class StockReserved(BaseModel):
    """注文のために在庫が引き当てられた"""
    sweet_id: str
    order_id: str
    quantity: int
    quantity_after: int
    timestamp: datetime
