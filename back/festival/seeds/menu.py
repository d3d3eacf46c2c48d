"""
Seed the takoyaki stall menu: products, toppings and topping restrictions.

Safe to run repeatedly; existing products and toppings (matched by name) are
left untouched.

Usage:
    python -m festival.seeds.menu
"""

from sqlmodel import Session, select

from festival.db import build_engine, create_db_and_tables
from festival.models import Product, Topping, ToppingProduct


# name -> (price, cooking_time, stock, low_stock_threshold)
MENU_PRODUCTS = {
    "Takoyaki (6 pcs)": (500, 8, 120, 15),
    "Takoyaki (10 pcs)": (800, 10, 80, 10),
    "Cheese Takoyaki (6 pcs)": (600, 9, 60, 10),
    "Ramune": (200, 0, 100, 20),
    "Green Tea": (150, 0, 100, 20),
}

# name -> (price, products it is limited to; empty = every product)
MENU_TOPPINGS = {
    "Green Onion": (50, []),
    "Extra Mayo": (30, []),
    "Bonito Flakes": (50, ["Takoyaki (6 pcs)", "Takoyaki (10 pcs)", "Cheese Takoyaki (6 pcs)"]),
    "Extra Cheese": (100, ["Cheese Takoyaki (6 pcs)"]),
}


def seed_menu(session: Session) -> dict[str, int]:
    """
    Create missing products and toppings.

    Returns:
        dict with counts of created products and toppings
    """
    products_created = 0
    toppings_created = 0

    products: dict[str, Product] = {}
    for name, (price, cooking_time, stock, threshold) in MENU_PRODUCTS.items():
        product = session.exec(select(Product).where(Product.name == name)).first()
        if not product:
            product = Product(
                name=name,
                price=price,
                cooking_time=cooking_time,
                stock_quantity=stock,
                initial_stock=stock,
                low_stock_threshold=threshold,
            )
            session.add(product)
            session.flush()
            products_created += 1
            print(f"Created product: {name}")
        products[name] = product

    for name, (price, limited_to) in MENU_TOPPINGS.items():
        topping = session.exec(select(Topping).where(Topping.name == name)).first()
        if topping:
            continue
        topping = Topping(name=name, price=price)
        session.add(topping)
        session.flush()
        for product_name in limited_to:
            session.add(ToppingProduct(topping_id=topping.id, product_id=products[product_name].id))
        toppings_created += 1
        print(f"Created topping: {name}")

    session.commit()
    return {
        "products_created": products_created,
        "toppings_created": toppings_created,
    }


if __name__ == "__main__":
    print("Seeding takoyaki menu...")
    engine = build_engine()
    create_db_and_tables(engine)
    with Session(engine) as session:
        result = seed_menu(session)
    print("\nComplete!")
    print(f"  Products created: {result['products_created']}")
    print(f"  Toppings created: {result['toppings_created']}")
