"""Fixed tag vocabularies for recall attributes and subscriber preferences."""

AUDIENCE = ("consumers", "professionals")
DEFAULT_AUDIENCE = ("consumers",)

CPSC_CATEGORIES = ("animals", "commercial", "drugs", "electronics", "home", "outdoor", "personal", "toys")
FDA_CATEGORIES = ("animals", "drugs", "food", "medical", "personal")
USDA_CATEGORIES = ("food",)
NHTSA_CATEGORIES = ("home",)

CATEGORY_BUNDLES = {
    "food": ("animals", "food"),
    "home": ("electronics", "home", "outdoor", "personal", "toys"),
    "medical": ("drugs", "medical"),
    "commercial": ("commercial",),
}

DEFAULT_CATEGORIES = tuple(sorted(set(CATEGORY_BUNDLES["food"] + CATEGORY_BUNDLES["home"])))

PUBLIC_CATEGORIES = tuple(
    sorted(set(CPSC_CATEGORIES + FDA_CATEGORIES + USDA_CATEGORIES + NHTSA_CATEGORIES))
)

RISK = ("probable", "possible", "none")
DEFAULT_RISK = ("probable", "possible")

STATES = (
    "AL", "AK", "AZ", "AR",
    "CA", "CO", "CT",
    "DE", "DC",
    "FL",
    "GA",
    "HI",
    "ID", "IL", "IN", "IA",
    "KS", "KY",
    "LA",
    "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT",
    "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND",
    "OH", "OK", "OR",
    "PA",
    "RI",
    "SC", "SD",
    "TN", "TX",
    "UT",
    "VT", "VA",
    "WA", "WV", "WI", "WY",
)
TERRITORIES = ("TT",)
ALL_STATES = STATES + TERRITORIES

# preference dimension -> allowed values
PREFERENCE_VOCABULARY: dict[str, tuple[str, ...]] = {
    "audience": AUDIENCE,
    "categories": PUBLIC_CATEGORIES,
    "distribution": ALL_STATES,
    "risk": RISK,
}

PREFERENCE_DEFAULTS: dict[str, tuple[str, ...]] = {
    "audience": DEFAULT_AUDIENCE,
    "categories": DEFAULT_CATEGORIES,
    "distribution": STATES,
    "risk": DEFAULT_RISK,
}
