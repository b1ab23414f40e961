"""
Stock Service — 商品在庫の引き当て (Reserve) と解放 (Release)

HTTP と注文イベント(Redis Streams)の 2 つの入口から在庫を更新する。
読み取りは Redis キャッシュ優先、書き込みは DB → キャッシュの順。
"""

__version__ = "0.1.0"
