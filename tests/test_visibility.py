from types import SimpleNamespace

import pytest

from orderdesk import models, orders, schemas
from orderdesk.models import Actor
from orderdesk.visibility import (
    TARGET_CUSTOMER,
    TARGET_ORDER,
    SqlRelations,
    VisibilityContext,
    can_view,
    can_view_customer,
    can_view_order,
    is_superadmin,
    visible_customers_clause,
    visible_orders_clause,
)

from conftest import actor_of


class FakeRelations:
    """In-memory stand-in for SqlRelations."""

    def __init__(self, users=(), orders=(), assignments=()):
        self.users = {u.id: u for u in users}
        self.orders = {o.id: o for o in orders}
        self.assignments = set(assignments)

    def get_user(self, user_id):
        return self.users.get(user_id)

    def get_order(self, order_id):
        return self.orders.get(order_id)

    def subordinate_ids(self, user_id):
        return [u.id for u in self.users.values() if u.created_by_id == user_id]

    def is_assigned(self, customer_id, employee_ids):
        return any((customer_id, e) in self.assignments for e in employee_ids)


def user(id, role, created_by_id=None):
    return SimpleNamespace(id=id, role=role, created_by_id=created_by_id)


def order(id, customer_id, created_by_id, assigned_to_id=None):
    return SimpleNamespace(id=id, customer_id=customer_id, created_by_id=created_by_id, assigned_to_id=assigned_to_id)


CTX = VisibilityContext(superadmin_email="boss@example.com")

# admin 1 created employee 2 and customer 4; admin 6 is unrelated;
# customer 3 is a root account assigned to employee 2; employee 5 was created by admin 6
ADMIN, EMPLOYEE, ROOT_CUSTOMER, OWN_CUSTOMER, OTHER_EMPLOYEE, OTHER_ADMIN = 1, 2, 3, 4, 5, 6
RELATIONS = FakeRelations(
    users=[
        user(ADMIN, "admin"),
        user(EMPLOYEE, "employee", ADMIN),
        user(ROOT_CUSTOMER, "customer"),
        user(OWN_CUSTOMER, "customer", ADMIN),
        user(OTHER_EMPLOYEE, "employee", OTHER_ADMIN),
        user(OTHER_ADMIN, "admin"),
    ],
    orders=[
        order(10, ROOT_CUSTOMER, ROOT_CUSTOMER, assigned_to_id=EMPLOYEE),
        order(11, OWN_CUSTOMER, EMPLOYEE),
        order(12, OWN_CUSTOMER, OTHER_ADMIN, assigned_to_id=OTHER_EMPLOYEE),
    ],
    assignments=[(ROOT_CUSTOMER, EMPLOYEE)],
)


def act(id, role, email=""):
    return Actor(id=id, role=role, email=email)


def test_nobody_sees_without_an_actor():
    assert not can_view_customer(CTX, RELATIONS, None, ROOT_CUSTOMER)
    assert not can_view_order(CTX, RELATIONS, None, 10)


def test_superadmin_email_is_case_insensitive():
    boss = act(OTHER_ADMIN, "admin", "Boss@Example.COM")
    assert is_superadmin(CTX, boss)
    assert can_view_order(CTX, RELATIONS, boss, 10)
    assert can_view_customer(CTX, RELATIONS, boss, ROOT_CUSTOMER)


def test_superadmin_needs_admin_role_and_configured_email():
    assert not is_superadmin(CTX, act(EMPLOYEE, "employee", "boss@example.com"))
    assert not is_superadmin(VisibilityContext(), act(ADMIN, "admin", ""))
    assert not is_superadmin(VisibilityContext(superadmin_email=""), act(ADMIN, "admin", "boss@example.com"))


@pytest.mark.parametrize("viewer,customer_id,expected", [
    (act(ADMIN, "admin"), ADMIN, True),
    (act(ADMIN, "admin"), OWN_CUSTOMER, True),
    (act(ADMIN, "admin"), ROOT_CUSTOMER, True),
    (act(OTHER_ADMIN, "admin"), ROOT_CUSTOMER, False),
    (act(OTHER_ADMIN, "admin"), OWN_CUSTOMER, False),
    (act(ADMIN, "admin"), 999, False),
    (act(EMPLOYEE, "employee"), ROOT_CUSTOMER, True),
    (act(EMPLOYEE, "employee"), OWN_CUSTOMER, False),
    (act(OTHER_EMPLOYEE, "employee"), ROOT_CUSTOMER, False),
    (act(ROOT_CUSTOMER, "customer"), ROOT_CUSTOMER, True),
    (act(ROOT_CUSTOMER, "customer"), OWN_CUSTOMER, False),
])
def test_can_view_customer(viewer, customer_id, expected):
    assert can_view_customer(CTX, RELATIONS, viewer, customer_id) is expected


@pytest.mark.parametrize("viewer,order_id,expected", [
    # customer 3 is assigned to a subordinate of admin 1
    (act(ADMIN, "admin"), 10, True),
    # created by a subordinate
    (act(ADMIN, "admin"), 11, True),
    (act(ADMIN, "admin"), 12, False),
    (act(OTHER_ADMIN, "admin"), 12, True),
    (act(OTHER_ADMIN, "admin"), 10, False),
    (act(EMPLOYEE, "employee"), 10, True),
    (act(EMPLOYEE, "employee"), 11, False),
    (act(OTHER_EMPLOYEE, "employee"), 12, True),
    (act(ROOT_CUSTOMER, "customer"), 10, True),
    (act(ROOT_CUSTOMER, "customer"), 11, False),
    (act(OWN_CUSTOMER, "customer"), 11, True),
    (act(ADMIN, "admin"), 404, False),
])
def test_can_view_order(viewer, order_id, expected):
    assert can_view_order(CTX, RELATIONS, viewer, order_id) is expected


def test_staff_accounts_are_not_customers():
    boss = act(OTHER_ADMIN, "admin", "boss@example.com")
    assert not can_view_customer(CTX, RELATIONS, act(ADMIN, "admin"), EMPLOYEE)
    assert not can_view(CTX, RELATIONS, act(ADMIN, "admin"), TARGET_CUSTOMER, EMPLOYEE)
    assert not can_view_customer(CTX, RELATIONS, boss, OTHER_EMPLOYEE)
    assert not can_view_customer(CTX, RELATIONS, boss, ADMIN)
    assert can_view_customer(CTX, RELATIONS, boss, OTHER_ADMIN)
    assert can_view_customer(CTX, RELATIONS, act(EMPLOYEE, "employee"), EMPLOYEE)


def test_only_one_level_of_subordinates_is_searched():
    relations = FakeRelations(
        users=[user(1, "admin"), user(2, "admin", 1), user(3, "employee", 2), user(4, "customer", 3)],
        orders=[order(20, 4, 3)],
    )
    assert can_view_order(CTX, relations, act(2, "admin"), 20)
    assert not can_view_order(CTX, relations, act(1, "admin"), 20)
    assert not can_view_customer(CTX, relations, act(1, "admin"), 4)


def test_can_view_dispatches_on_kind():
    viewer = act(EMPLOYEE, "employee")
    assert can_view(CTX, RELATIONS, viewer, TARGET_CUSTOMER, ROOT_CUSTOMER)
    assert can_view(CTX, RELATIONS, viewer, TARGET_ORDER, 10)
    with pytest.raises(ValueError):
        can_view(CTX, RELATIONS, viewer, "product", 1)


@pytest.fixture
def hierarchy(db_session, ctx, make_user, make_product, assign):
    """Admin A creates employee E; customer C is assigned to E; order O for C is assigned to E."""
    admin = make_user("admin")
    employee = make_user("employee", created_by=admin)
    customer = make_user("customer")
    assign(customer, employee)
    product = make_product(stock=5)
    placed = orders.create_order(
        db_session,
        ctx,
        actor_of(admin),
        [schemas.OrderItemCreate(product_id=product.id, quantity=1)],
        customer_id=customer.id,
        assigned_to_id=employee.id,
    )
    return SimpleNamespace(admin=admin, employee=employee, customer=customer, order=placed)


def test_hierarchy_scenario(db_session, ctx, make_user, hierarchy):
    relations = SqlRelations(db_session)
    other_admin = make_user("admin")
    superadmin = make_user("admin", email="ROOT@Example.com")

    for viewer, expected in [
        (hierarchy.employee, True),
        (hierarchy.admin, True),
        (hierarchy.customer, True),
        (other_admin, False),
        (superadmin, True),
    ]:
        assert can_view_order(ctx, relations, actor_of(viewer), hierarchy.order.id) is expected
        assert can_view_customer(ctx, relations, actor_of(viewer), hierarchy.customer.id) is expected


def test_list_clauses_agree_with_point_checks(db_session, ctx, make_user, make_product, assign, hierarchy):
    admin = hierarchy.admin
    second_employee = make_user("employee", created_by=admin)
    loner = make_user("customer")
    own = make_user("customer", created_by=second_employee)
    assign(own, second_employee)
    product = make_product(stock=50)
    placements = [
        (loner, None),
        (own, None),
        (second_employee, own.id),
        (admin, None),
        (admin, hierarchy.customer.id),
    ]
    for creator, customer_id in placements:
        orders.create_order(
            db_session,
            ctx,
            actor_of(creator),
            [schemas.OrderItemCreate(product_id=product.id, quantity=1)],
            customer_id=customer_id,
        )
    outsider = make_user("admin")
    superadmin = make_user("admin", email="root@example.com")

    relations = SqlRelations(db_session)
    all_orders = db_session.query(models.Order).all()
    all_customers = db_session.query(models.User).filter(models.User.role == "customer").all()
    viewers = [admin, hierarchy.employee, second_employee, hierarchy.customer, loner, own, outsider, superadmin]
    for viewer in viewers:
        actor = actor_of(viewer)
        listed = {o.id for o in db_session.query(models.Order).filter(visible_orders_clause(ctx, actor))}
        checked = {o.id for o in all_orders if can_view_order(ctx, relations, actor, o.id)}
        assert listed == checked, viewer.email

        listed = {u.id for u in db_session.query(models.User).filter(visible_customers_clause(ctx, actor))}
        checked = {u.id for u in all_customers if can_view_customer(ctx, relations, actor, u.id)}
        assert listed == checked, viewer.email

    assert {o.id for o in orders.list_orders_visible_to(db_session, ctx, actor_of(superadmin))} == {
        o.id for o in all_orders
    }
    assert orders.list_orders_visible_to(db_session, ctx, None) == []
