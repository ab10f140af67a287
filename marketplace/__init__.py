"""
Marketplace fulfillment core.

カート → 販売者ごとの注文を作る Checkout Saga と、
注文・商品・ユーザーの状態変化に続く副作用をすべて駆動する
プロセス内イベントバス。

  ┌──────────┐     ┌──────────────┐     ┌─────────────────────┐
  │ FastAPI  │────▶│ Checkout     │────▶│ Stock Reservation   │
  │ (api)    │     │ Saga (saga)  │────▶│ Order Repository    │
  └──────────┘     └──────┬───────┘     └─────────────────────┘
                          │ emit
                   ┌──────▼───────┐     ┌─────────────────────┐
                   │  Event Bus   │────▶│ cache / realtime /  │
                   │  (events)    │     │ search / notifier   │
                   └──────────────┘     └─────────────────────┘
"""

__version__ = "0.1.0"
