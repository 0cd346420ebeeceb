from flowtx import TransactionManager, TransactionOptions, new_store

manager = TransactionManager(TransactionOptions(timeout=5000))

# A cart whose observers only ever see consistent totals
cart = new_store({"items": 1, "price": 10.0, "total": 10.0}, manager)


def update_ui(state):
    print(f">>> Cart: {state['items']} x ${state['price']:.2f} = ${state['total']:.2f}")


cart.subscribe_callbacks(update_ui)

print("=" * 50)


def reprice(items, price):
    def body(ctx):
        # Both writes become visible together, at commit.
        cart.set_state({"items": items, "price": price})
        if price < 0:
            raise ValueError("price cannot be negative")
        cart.set_state({"total": items * price})

    cart.execute_transaction(body)


reprice(2, 15.0)

try:
    reprice(3, -1.0)
except ValueError as e:
    print(f"!!! Rejected: {e}")

print(cart.get_state())
manager.close()

# ==================================================
# >>> Cart: 1 x $10.00 = $10.00
# >>> Cart: 2 x $15.00 = $30.00
# >>> Cart: 2 x $15.00 = $30.00
# !!! Rejected: price cannot be negative
# {'items': 2, 'price': 15.0, 'total': 30.0}
