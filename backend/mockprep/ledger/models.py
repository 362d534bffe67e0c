from __future__ import annotations

from dataclasses import asdict, dataclass, field


@dataclass
class UserBalance:
    user_id: str
    remaining: int = 0
    total_purchased: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PrepPackage:
    package_id: str
    name: str
    preps: int
    price_usd: float
    popular: bool = False
    features: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["features"] = list(self.features)
        return payload


PREP_PACKAGES: tuple[PrepPackage, ...] = (
    PrepPackage(
        package_id="basic",
        name="Basic Pack",
        preps=5,
        price_usd=9.99,
        features=("5 Interview Preps", "AI Analysis", "Performance Reports"),
    ),
    PrepPackage(
        package_id="standard",
        name="Standard Pack",
        preps=12,
        price_usd=19.99,
        popular=True,
        features=("12 Interview Preps", "AI Analysis", "Performance Reports", "Priority Support"),
    ),
    PrepPackage(
        package_id="premium",
        name="Premium Pack",
        preps=25,
        price_usd=34.99,
        features=("25 Interview Preps", "AI Analysis", "Performance Reports", "Priority Support", "Resume Review"),
    ),
)


def find_package(package_id: str) -> PrepPackage | None:
    key = str(package_id or "").strip().lower()
    for package in PREP_PACKAGES:
        if package.package_id == key:
            return package
    return None
