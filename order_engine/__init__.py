"""
Order Engine — 注文ライフサイクル & 在庫引き当てエンジン

カートを注文に変換し、在庫を原子的に引き当て、
顧客 → 販売者 → 配送パートナーの状態機械で注文を進める。
"""

__version__ = "0.1.0"
