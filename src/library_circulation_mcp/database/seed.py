"""
Database seeding for the Library Circulation MCP Server.

Generates a catalog, a set of users and a realistic loan history. Loans are
created through the circulation service with a movable clock, so seeded data
obeys the same rules as live traffic: copy counters match open loans, no user
holds two copies of a book, and fines of returned loans are fixed at their
return time.

The generated ledger contains:
- Returned loans, some of them late with a fine
- Open loans still within their loan period
- Open loans already past due
"""

import argparse
import heapq
import logging
import random
import sys
from datetime import datetime, timedelta

from faker import Faker

from ..circulation import CirculationService
from ..clock import FixedClock
from ..config import get_config
from .book_repository import BookCreateSchema
from .repository import ConflictError
from .session import get_db_manager
from .user_repository import UserCreateSchema

logger = logging.getLogger(__name__)

CATEGORIES = [
    "Fiction",
    "Mystery",
    "Science Fiction",
    "Fantasy",
    "Biography",
    "History",
    "Science",
    "Children",
    "Poetry",
    "Reference",
]


def generate_isbn13(rng: random.Random) -> str:
    """Generate a valid ISBN-13 number."""
    body = f"978{rng.randint(0, 9)}{rng.randint(1000, 9999)}{rng.randint(1000, 9999)}"
    total = sum(int(digit) * (3 if i % 2 else 1) for i, digit in enumerate(body))
    return f"{body}{(10 - total % 10) % 10}"


def seed_database(
    service: CirculationService,
    num_books: int = 40,
    num_users: int = 15,
    num_loans: int = 60,
    seed: int = 42,
    now: datetime | None = None,
) -> dict[str, int]:
    """
    Populate an empty database.

    Args:
        service: Service bound to the target database
        num_books: Titles to catalog
        num_users: Users to register
        num_loans: Loans to attempt; some are skipped when no copy is free
        seed: Seed for Faker and the random choices
        now: The present moment of the generated history

    Returns:
        Counts of what was created
    """
    fake = Faker()
    Faker.seed(seed)
    rng = random.Random(seed)
    now = now or datetime.now()

    books = []
    for _ in range(num_books):
        category = rng.choice(CATEGORIES)
        books.append(
            service.add_book(
                BookCreateSchema(
                    title=fake.sentence(nb_words=rng.randint(2, 5)).rstrip("."),
                    author=fake.name(),
                    isbn=generate_isbn13(rng),
                    category=category,
                    quantity=rng.randint(1, 4),
                )
            )
        )
    logger.info("Catalogued %d books", len(books))

    users = [
        service.register_user(UserCreateSchema(name=fake.name(), email=fake.unique.email()))
        for _ in range(num_users)
    ]
    logger.info("Registered %d users", len(users))

    original_clock = service.clock
    clock = FixedClock(now)
    service.clock = clock

    counts = {"books": len(books), "users": len(users), "returned": 0, "open": 0, "skipped": 0}
    # (return time, loan id); a copy only comes back once the timeline reaches it
    pending_returns: list[tuple[datetime, str]] = []

    def return_due(until: datetime) -> None:
        while pending_returns and pending_returns[0][0] <= until:
            returned_at, loan_id = heapq.heappop(pending_returns)
            service.return_loan(loan_id, now=returned_at)
            counts["returned"] += 1

    issued = 0
    try:
        issue_times = sorted(now - timedelta(days=rng.uniform(0, 60)) for _ in range(num_loans))
        for issued_at in issue_times:
            return_due(issued_at)
            clock.set(issued_at)
            book = rng.choice(books)
            user = rng.choice(users)
            try:
                loan = service.issue_loan(book.id, user.id)
            except ConflictError:
                counts["skipped"] += 1
                continue
            issued += 1

            # Roughly two thirds come back, some of them late
            kept_for = timedelta(days=rng.uniform(1, 24))
            if rng.random() < 0.66 and issued_at + kept_for < now:
                heapq.heappush(pending_returns, (issued_at + kept_for, loan.id))
        return_due(now)
    finally:
        service.clock = original_clock

    counts["open"] = issued - counts["returned"]

    counts["overdue_marked"] = service.sweep_overdue(now)
    logger.info(
        "Seeded %d returned and %d open loans (%d skipped, %d overdue)",
        counts["returned"],
        counts["open"],
        counts["skipped"],
        counts["overdue_marked"],
    )
    return counts


def main():
    """Entry point for the library-circulation-seed command."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Seed the Library Circulation database")
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop existing tables before seeding",
    )
    parser.add_argument("--database-url", help="Override default database URL")
    parser.add_argument("--books", type=int, default=40, help="Number of books to catalog")
    parser.add_argument("--users", type=int, default=15, help="Number of users to register")
    parser.add_argument("--loans", type=int, default=60, help="Number of loans to attempt")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    args = parser.parse_args()

    db_manager = get_db_manager(args.database_url)
    if not db_manager.verify_connection():
        logger.error("Failed to connect to database")
        sys.exit(1)

    try:
        db_manager.init_database(drop_existing=args.drop_existing)
        service = CirculationService(db_manager, config=get_config())
        counts = seed_database(
            service,
            num_books=args.books,
            num_users=args.users,
            num_loans=args.loans,
            seed=args.seed,
        )
        logger.info("Seeding complete: %s", counts)
    except Exception:
        logger.exception("Database seeding failed")
        sys.exit(1)
    finally:
        db_manager.close()


if __name__ == "__main__":
    main()
