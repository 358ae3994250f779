from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import pytest

from counterkeep.adapters.sqlalchemy import CounterContext, counter_context
from counterkeep.adapters.sqlalchemy.hooks import PendingUpdate
from counterkeep.domain import CounterDelta
from tests.support.schema import (
    Category,
    Company,
    Image,
    Industry,
    Mark,
    Product,
    Review,
    User,
    Video,
    read_counter,
    write_counter,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session

    from counterkeep.adapters.sqlalchemy import SqlAlchemyRelationCatalog
    from counterkeep.domain import CounterRegistry


@pytest.fixture
def people(sqlite_session: Session) -> None:
    industry = Industry(id=1, name="Software")
    acme = Company(id=1, name="Acme", industry=industry)
    globex = Company(id=2, name="Globex", industry=industry)
    sqlite_session.add_all(
        [
            industry,
            acme,
            globex,
            User(id=1, name="Ann", company=acme),
            User(id=2, name="Bob", company=globex),
            Category(slug="tools", name="Tools"),
            Category(slug="toys", name="Toys"),
            Product(id=1, name="Hammer", category_slug="tools"),
        ]
    )
    sqlite_session.commit()


@pytest.mark.usefixtures("people")
def test_create_and_destroy_keep_count(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")
    counters.counter(Review, "product")

    sqlite_session.add_all([Review(id=1, user_id=1, product_id=1), Review(id=2, user_id=1)])
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 2
    assert read_counter(sqlite_engine, Product, 1, "reviews_count") == 1

    sqlite_session.delete(sqlite_session.get(Review, 1))
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 1
    assert read_counter(sqlite_engine, Product, 1, "reviews_count") == 0


@pytest.mark.usefixtures("people")
def test_counts_are_applied_only_after_commit(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")

    sqlite_session.add(Review(id=1, user_id=1))
    sqlite_session.flush()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 0
    assert len(counter_context(sqlite_session).pending) == 1

    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 1


@pytest.mark.usefixtures("people")
def test_rollback_discards_pending_counts(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")

    sqlite_session.add(Review(id=1, user_id=1))
    sqlite_session.flush()
    sqlite_session.rollback()
    sqlite_session.add(Review(id=2, user_id=2))
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 0
    assert read_counter(sqlite_engine, User, 2, "reviews_count") == 1


@pytest.mark.usefixtures("people")
def test_savepoint_commit_waits_for_outer_commit(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")

    with sqlite_session.begin_nested():
        sqlite_session.add(Review(id=1, user_id=1))

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 0

    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 1


@pytest.mark.usefixtures("people")
def test_rolled_back_savepoint_drops_its_counts(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")
    sqlite_session.add(Review(id=1, user_id=2))
    sqlite_session.flush()

    with pytest.raises(RuntimeError, match="abandoned"), sqlite_session.begin_nested():
        sqlite_session.add(Review(id=2, user_id=1))
        sqlite_session.flush()
        raise RuntimeError("abandoned")

    pending = counter_context(sqlite_session).pending
    assert [update.delta.primary_keys for update in pending] == [(2,)]

    # the same row may be written again once its savepoint is gone
    sqlite_session.add(Review(id=2, user_id=1))
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 1
    assert read_counter(sqlite_engine, User, 2, "reviews_count") == 1


@pytest.mark.usefixtures("people")
def test_released_savepoint_follows_its_enclosing_rollback(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")

    enclosing = sqlite_session.begin_nested()
    with sqlite_session.begin_nested():
        sqlite_session.add(Review(id=1, user_id=1))
    enclosing.rollback()
    sqlite_session.add(Review(id=2, user_id=2))
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 0
    assert read_counter(sqlite_engine, User, 2, "reviews_count") == 1


@pytest.mark.usefixtures("people")
def test_touch_time_is_taken_when_updates_run(
    catalog: SqlAlchemyRelationCatalog, sqlite_engine: Engine
) -> None:
    context = CounterContext()
    delta = CounterDelta(
        target_type=Product,
        primary_keys=(1,),
        column="reviews_count",
        magnitude=1,
        increment=True,
        touch=True,
    )
    context.pending.append(PendingUpdate(sqlite_engine, catalog, delta))
    applied_at = datetime(2024, 5, 1, 12, 30)

    context.apply(now=applied_at)

    assert read_counter(sqlite_engine, Product, 1, "updated_at") == applied_at
    assert read_counter(sqlite_engine, Product, 1, "reviews_count") == 1
    assert context.pending == []


@pytest.mark.usefixtures("people")
def test_three_level_chain(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, ("user", "company"))
    counters.counter(Review, ("user", "company", "industry"))

    sqlite_session.add_all([Review(id=1, user_id=1), Review(id=2, user_id=2)])
    sqlite_session.commit()

    assert read_counter(sqlite_engine, Company, 1, "reviews_count") == 1
    assert read_counter(sqlite_engine, Company, 2, "reviews_count") == 1
    assert read_counter(sqlite_engine, Industry, 1, "reviews_count") == 2


@pytest.mark.usefixtures("people")
def test_reparenting_moves_count(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")
    counters.counter(Review, ("user", "company"))
    sqlite_session.add(Review(id=1, user_id=1))
    sqlite_session.commit()

    review = sqlite_session.get(Review, 1)
    assert review is not None
    review.user = sqlite_session.get(User, 2)
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 0
    assert read_counter(sqlite_engine, User, 2, "reviews_count") == 1
    assert read_counter(sqlite_engine, Company, 1, "reviews_count") == 0
    assert read_counter(sqlite_engine, Company, 2, "reviews_count") == 1


@pytest.mark.usefixtures("people")
def test_unrelated_update_leaves_counts_alone(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")
    sqlite_session.add(Review(id=1, user_id=1, review_type="using"))
    sqlite_session.commit()

    review = sqlite_session.get(Review, 1)
    assert review is not None
    review.review_type = "tried"
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 1


@pytest.mark.usefixtures("people")
def test_null_foreign_keys_are_safe(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")
    counters.counter(Review, ("user", "company"))
    sqlite_session.add(Review(id=1, user_id=None))
    sqlite_session.commit()

    review = sqlite_session.get(Review, 1)
    assert review is not None
    review.user_id = 2
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 2, "reviews_count") == 1

    review.user_id = None
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 2, "reviews_count") == 0
    assert read_counter(sqlite_engine, Company, 2, "reviews_count") == 0


@pytest.mark.usefixtures("people")
def test_delta_column_sums(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(
        Review, "user", column_name="review_approvals_count", delta_column="approvals"
    )
    sqlite_session.add_all(
        [
            Review(id=1, user_id=1, approvals=3),
            Review(id=2, user_id=1, approvals=None),
            Review(id=3, user_id=1, approvals=4),
        ]
    )
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 1, "review_approvals_count") == 7

    review = sqlite_session.get(Review, 1)
    assert review is not None
    review.approvals = 10
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 1, "review_approvals_count") == 14

    review.user_id = 2
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 1, "review_approvals_count") == 4
    assert read_counter(sqlite_engine, User, 2, "review_approvals_count") == 10


@pytest.mark.usefixtures("people")
def test_dynamic_column_moves_between_columns(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(
        Review,
        "user",
        column_name=lambda review: f"{review.review_type}_count" if review.review_type else None,
    )
    sqlite_session.add_all(
        [
            Review(id=1, user_id=1, review_type="using"),
            Review(id=2, user_id=1, review_type=None),
        ]
    )
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 1, "using_count") == 1
    assert read_counter(sqlite_engine, User, 1, "tried_count") == 0

    review = sqlite_session.get(Review, 1)
    assert review is not None
    review.review_type = "tried"
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 1, "using_count") == 0
    assert read_counter(sqlite_engine, User, 1, "tried_count") == 1

    other = sqlite_session.get(Review, 2)
    assert other is not None
    other.review_type = "using"
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 1, "using_count") == 1


@pytest.mark.usefixtures("people")
def test_null_counter_column_counts_from_zero(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")
    write_counter(sqlite_engine, User, 1, "reviews_count", None)

    sqlite_session.add(Review(id=1, user_id=1))
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 1


@pytest.mark.usefixtures("people")
def test_destroying_expired_record(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")
    review = Review(id=1, user_id=1)
    sqlite_session.add(review)
    sqlite_session.commit()

    # committed instances are expired; none of its columns are loaded here
    sqlite_session.delete(review)
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 0


@pytest.mark.usefixtures("people")
def test_record_handled_once_per_transaction(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "user")

    review = Review(id=1, user_id=1)
    sqlite_session.add(review)
    sqlite_session.flush()
    review.user_id = 2
    sqlite_session.flush()
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "reviews_count") == 1
    assert read_counter(sqlite_engine, User, 2, "reviews_count") == 0


@pytest.mark.usefixtures("people")
def test_self_referential_counter(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Company, "parent", column_name="children_count")

    sqlite_session.add_all(
        [
            Company(id=3, name="Acme Labs", parent_id=1),
            Company(id=4, name="Acme Ops", parent_id=1),
        ]
    )
    sqlite_session.commit()
    assert read_counter(sqlite_engine, Company, 1, "children_count") == 2

    labs = sqlite_session.get(Company, 3)
    assert labs is not None
    labs.parent_id = 2
    sqlite_session.commit()
    assert read_counter(sqlite_engine, Company, 1, "children_count") == 1
    assert read_counter(sqlite_engine, Company, 2, "children_count") == 1


@pytest.mark.usefixtures("people")
def test_string_primary_keys(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Product, "category")

    sqlite_session.add(Product(id=2, name="Drill", category_slug="tools"))
    sqlite_session.commit()
    assert read_counter(sqlite_engine, Category, "tools", "products_count") == 1

    drill = sqlite_session.get(Product, 2)
    assert drill is not None
    drill.category_slug = "toys"
    sqlite_session.commit()
    assert read_counter(sqlite_engine, Category, "tools", "products_count") == 0
    assert read_counter(sqlite_engine, Category, "toys", "products_count") == 1


@pytest.mark.usefixtures("people")
def test_touch_sets_timestamp(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Review, "product", touch=True)
    counters.counter(Review, "user")

    sqlite_session.add(Review(id=1, user_id=1, product_id=1))
    sqlite_session.commit()

    assert read_counter(sqlite_engine, Product, 1, "updated_at") is not None
    assert read_counter(sqlite_engine, User, 1, "updated_at") is None


@pytest.mark.usefixtures("people")
def test_foreign_key_values_update_every_key(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(
        Review, "user", column_name="using_count", foreign_key_values=lambda key: (1, 2)
    )

    sqlite_session.add(Review(id=1, user_id=1))
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "using_count") == 1
    assert read_counter(sqlite_engine, User, 2, "using_count") == 1


@pytest.mark.usefixtures("people")
def test_polymorphic_owner(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Image, "owner")

    sqlite_session.add_all(
        [
            Image(id=1, owner_id=1, owner_type="User"),
            Image(id=2, owner_id=1, owner_type="Company"),
            Image(id=3, owner_id=1, owner_type=None),
        ]
    )
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 1, "images_count") == 1
    assert read_counter(sqlite_engine, Company, 1, "images_count") == 1

    image = sqlite_session.get(Image, 1)
    assert image is not None
    image.owner_type = "Company"
    sqlite_session.commit()
    assert read_counter(sqlite_engine, User, 1, "images_count") == 0
    assert read_counter(sqlite_engine, Company, 1, "images_count") == 2


@pytest.mark.usefixtures("people")
def test_polymorphic_two_level_chain(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Mark, "mark_out")
    counters.counter(Mark, ("mark_out", "owner"))
    sqlite_session.add_all(
        [
            Image(id=1, owner_id=1, owner_type="User"),
            Video(id=1, owner_id=2, owner_type="Company"),
        ]
    )
    sqlite_session.commit()

    sqlite_session.add_all(
        [
            Mark(id=1, mark_out_id=1, mark_out_type="Image"),
            Mark(id=2, mark_out_id=1, mark_out_type="Video"),
            Mark(id=3, mark_out_id=1, mark_out_type="Video"),
        ]
    )
    sqlite_session.commit()

    assert read_counter(sqlite_engine, Image, 1, "marks_count") == 1
    assert read_counter(sqlite_engine, Video, 1, "marks_count") == 2
    assert read_counter(sqlite_engine, User, 1, "marks_count") == 1
    assert read_counter(sqlite_engine, Company, 2, "marks_count") == 2


@pytest.mark.usefixtures("people")
def test_only_filter_limits_polymorphic_targets(
    counters: CounterRegistry, sqlite_session: Session, sqlite_engine: Engine
) -> None:
    counters.counter(Image, "owner", only="Company")

    sqlite_session.add_all(
        [
            Image(id=1, owner_id=1, owner_type="User"),
            Image(id=2, owner_id=1, owner_type="Company"),
        ]
    )
    sqlite_session.commit()

    assert read_counter(sqlite_engine, User, 1, "images_count") == 0
    assert read_counter(sqlite_engine, Company, 1, "images_count") == 1
