"""
Sweet Shop Storefront

商品カタログ・在庫引き当て・注文確定を扱うストアフロントサービス。
"""
