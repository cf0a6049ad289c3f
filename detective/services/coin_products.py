"""
Coin pack catalog sold through the payment gateway
"""
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class CoinProduct:
    id: str
    name: str
    base_coins: int
    bonus_coins: int
    total_coins: int
    price: int  # KRW
    discount_rate: int  # percent


COIN_PRODUCTS: List[CoinProduct] = [
    CoinProduct("COIN_PACK_A", "코인 패키지 A", 10, 1, 11, 1000, 10),
    CoinProduct("COIN_PACK_B", "코인 패키지 B", 20, 3, 23, 2000, 15),
    CoinProduct("COIN_PACK_C", "코인 패키지 C", 30, 5, 35, 3000, 17),
    CoinProduct("COIN_PACK_D", "코인 패키지 D", 50, 10, 60, 5000, 20),
    CoinProduct("COIN_PACK_E", "코인 패키지 E", 80, 20, 100, 8000, 25),
    CoinProduct("COIN_PACK_F", "코인 패키지 F", 100, 30, 130, 10000, 30),
]


def get_coin_product(product_id: Optional[str]) -> Optional[CoinProduct]:
    """Look up a product by id; None for unknown ids"""
    for product in COIN_PRODUCTS:
        if product.id == product_id:
            return product
    return None
