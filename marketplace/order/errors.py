"""
Order Service — 例外

Saga の原子的な段階 (入力検証・在庫引き当て) で送出され、呼び出し元に返るもの。
ベストエフォートの段階 (メール・イベント・キャッシュ・カート削除) の失敗は
ここには現れず、ログに残るだけ。
"""


class MarketplaceError(Exception):
    pass


class ValidationError(MarketplaceError):
    """入力の形式が不正 (呼び出し側で直せる)"""


class EmptyCartError(MarketplaceError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No requested items found in cart of user {user_id}")
        self.user_id = user_id


class InsufficientStockError(MarketplaceError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id


class UnauthorizedError(MarketplaceError):
    pass


class InvalidCourierError(MarketplaceError):
    def __init__(self, courier_id: str) -> None:
        super().__init__(f"Invalid courier {courier_id}")
        self.courier_id = courier_id


class OrderNotFoundError(MarketplaceError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidStatusTransitionError(ValidationError):
    """終端ステータス (DELIVERED / CANCELLED) から別のステータスへ動かそうとした"""


class ReservationError(MarketplaceError):
    """引き当て後の永続化に失敗した (引き当ては補償済み)"""


class ReservationExpiredError(ReservationError):
    def __init__(self, reservation_id: str) -> None:
        super().__init__(f"Reservation {reservation_id} expired")
        self.reservation_id = reservation_id
