import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Category, CategoryKind, CategoryRule, RuleMatchType

logger = logging.getLogger(__name__)

INTERNAL_TRANSFER_SLUG = "internal-transfer"
SEED_RULE_PRIORITY = 100

DEFAULT_CATEGORIES: list[tuple[str, str, CategoryKind]] = [
    ("salary", "Salaire", CategoryKind.income),
    ("freelance", "Freelance", CategoryKind.income),
    ("dividends", "Dividendes", CategoryKind.income),
    ("rental-income", "Revenus locatifs", CategoryKind.income),
    ("refund", "Remboursements", CategoryKind.income),
    ("other-income", "Autres revenus", CategoryKind.income),
    ("housing", "Logement", CategoryKind.expense),
    ("utilities", "Factures", CategoryKind.expense),
    ("groceries", "Courses", CategoryKind.expense),
    ("restaurants", "Restaurants", CategoryKind.expense),
    ("transport", "Transport", CategoryKind.expense),
    ("health", "Santé", CategoryKind.expense),
    ("insurance", "Assurances", CategoryKind.expense),
    ("subscriptions", "Abonnements", CategoryKind.expense),
    ("shopping", "Shopping", CategoryKind.expense),
    ("leisure", "Loisirs", CategoryKind.expense),
    ("travel", "Voyages", CategoryKind.expense),
    ("education", "Éducation", CategoryKind.expense),
    ("taxes", "Impôts", CategoryKind.expense),
    ("fees", "Frais bancaires", CategoryKind.expense),
    ("savings", "Épargne", CategoryKind.expense),
    ("investment", "Investissements", CategoryKind.expense),
    ("loan-payment", "Remboursement de prêt", CategoryKind.expense),
    ("other-expense", "Autres dépenses", CategoryKind.expense),
    (INTERNAL_TRANSFER_SLUG, "Virement interne", CategoryKind.transfer),
]

DEFAULT_RULES: list[tuple[str, RuleMatchType, str]] = [
    ("carrefour", RuleMatchType.contains, "groceries"),
    ("leclerc", RuleMatchType.contains, "groceries"),
    ("auchan", RuleMatchType.contains, "groceries"),
    ("intermarche", RuleMatchType.contains, "groceries"),
    ("monoprix", RuleMatchType.contains, "groceries"),
    ("lidl", RuleMatchType.contains, "groceries"),
    ("sncf", RuleMatchType.contains, "transport"),
    ("ratp", RuleMatchType.contains, "transport"),
    ("total energies", RuleMatchType.contains, "transport"),
    ("uber eats", RuleMatchType.contains, "restaurants"),
    ("deliveroo", RuleMatchType.contains, "restaurants"),
    ("netflix", RuleMatchType.contains, "subscriptions"),
    ("spotify", RuleMatchType.contains, "subscriptions"),
    ("edf", RuleMatchType.contains, "utilities"),
    ("orange", RuleMatchType.contains, "utilities"),
    ("free mobile", RuleMatchType.contains, "utilities"),
    ("pharmacie", RuleMatchType.contains, "health"),
    ("dgfip", RuleMatchType.contains, "taxes"),
    ("amazon", RuleMatchType.contains, "shopping"),
    ("frais tenue de compte", RuleMatchType.contains, "fees"),
    ("cotisation carte", RuleMatchType.contains, "fees"),
    ("salaire", RuleMatchType.contains, "salary"),
]

# Labels printed by the institutions, folded to lowercase ASCII.
BANK_CATEGORY_MAP: dict[str, str] = {
    "salaires": "salary",
    "revenus": "other-income",
    "remboursements": "refund",
    "loyer": "housing",
    "logement": "housing",
    "telecom": "utilities",
    "telephone": "utilities",
    "internet": "utilities",
    "electricite": "utilities",
    "energie": "utilities",
    "eau": "utilities",
    "alimentation": "groceries",
    "supermarche": "groceries",
    "courses": "groceries",
    "transport": "transport",
    "carburant": "transport",
    "essence": "transport",
    "peage": "transport",
    "parking": "transport",
    "automobile": "transport",
    "restauration": "restaurants",
    "restaurant": "restaurants",
    "sante": "health",
    "pharmacie": "health",
    "medecin": "health",
    "assurance": "insurance",
    "mutuelle": "insurance",
    "shopping": "shopping",
    "habillement": "shopping",
    "vetements": "shopping",
    "electromenager": "shopping",
    "loisirs": "leisure",
    "sport": "leisure",
    "culture": "leisure",
    "education": "education",
    "formation": "education",
    "impots": "taxes",
    "taxes": "taxes",
    "frais bancaires": "fees",
    "frais": "fees",
    "agios": "fees",
    "epargne": "savings",
    "placement": "investment",
    "abonnement": "subscriptions",
    "abonnements": "subscriptions",
    "credit": "loan-payment",
    "pret": "loan-payment",
    "emprunt": "loan-payment",
    "virement interne": INTERNAL_TRANSFER_SLUG,
}


def seed_defaults(session: Session) -> dict[str, int]:
    """Insert missing default categories and rules. Safe to run repeatedly."""
    existing = {
        category.slug: category for category in session.scalars(select(Category)).all()
    }
    created_categories = 0
    for slug, name, kind in DEFAULT_CATEGORIES:
        if slug in existing:
            continue
        category = Category(slug=slug, name=name, kind=kind)
        session.add(category)
        existing[slug] = category
        created_categories += 1
    session.flush()

    known_patterns = {
        (row.pattern, row.category_id)
        for row in session.execute(select(CategoryRule.pattern, CategoryRule.category_id))
    }
    created_rules = 0
    for pattern, match_type, slug in DEFAULT_RULES:
        category_id = existing[slug].id
        if (pattern, category_id) in known_patterns:
            continue
        session.add(
            CategoryRule(
                pattern=pattern,
                match_type=match_type,
                category_id=category_id,
                priority=SEED_RULE_PRIORITY,
                is_active=True,
            )
        )
        created_rules += 1
    session.commit()
    logger.info(
        f"seed_defaults: categories_created={created_categories} rules_created={created_rules}"
    )
    return {"categories": created_categories, "rules": created_rules}
