"""
Todo list built from a CrudRepository and a summary store.

Each user action is one wrapped transaction: the repository change and the
summary update commit together, or neither does.
"""

from flowtx import (
    CrudRepository,
    TransactionManager,
    new_store,
    transactional_methods,
)


class TodoService:
    def __init__(self, manager):
        self.todos = CrudRepository(manager, target="todo")
        self.summary = new_store({"open": 0, "done": 0}, manager)

    def add(self, todo_id, title):
        self.todos.create({"id": todo_id, "title": title, "done": False})
        self._refresh()

    def finish(self, todo_id):
        if self.todos.update(todo_id, {"done": True}) is None:
            raise KeyError(f"no todo with id {todo_id}")
        self._refresh()

    def remove(self, todo_id):
        self.todos.delete(todo_id)
        self._refresh()

    def _refresh(self):
        items = self.todos.read_all()
        done = sum(1 for item in items if item["done"])
        self.summary.set_state({"open": len(items) - done, "done": done})


manager = TransactionManager()
service = transactional_methods(
    TodoService(manager), ["add", "finish", "remove"], manager
)

service.summary.subscribe_callbacks(
    lambda s: print(f">>> {s['open']} open, {s['done']} done")
)

print("=" * 50)

service.add(1, "Write docs")
service.add(2, "Ship release")
service.finish(1)

try:
    service.finish(42)
except KeyError as e:
    print(f"!!! {e}")

service.remove(1)

for log in manager.get_transaction_logs():
    for op in log.operations:
        print(f"    {op.type.value:<6} {op.target} {op.data}")

manager.close()

# ==================================================
# >>> 0 open, 0 done
# >>> 1 open, 0 done
# >>> 2 open, 0 done
# >>> 1 open, 1 done
# !!! 'no todo with id 42'
# >>> 1 open, 0 done
#     create todo {'id': 1, 'title': 'Write docs', 'done': False}
#     create todo {'id': 2, 'title': 'Ship release', 'done': False}
#     update todo {'id': 1, 'title': 'Write docs', 'done': True}
#     delete todo {'id': 1}
