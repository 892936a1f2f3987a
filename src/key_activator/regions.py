"""Region registry: egress proxy endpoints and commerce markets per region."""

from types import MappingProxyType
from typing import Optional

from .errors import ActivationError, ErrorCode
from .models.product import RegionConfig

GLOBAL_REGIONS = frozenset({"GLOBAL", "WW", "WORLDWIDE"})

# Market used for global keys and as the fallback for regional markets.
GLOBAL_MARKET = "US"

_PROXY_DOMAIN = "decodo.com"

_REGION_TABLE: dict[str, tuple[int, str, str]] = {
    # code: (port, market, english name)
    "US": (10000, "US", "United States"),
    "CA": (20000, "CA", "Canada"),
    "AR": (10000, "AR", "Argentina"),
    "TR": (40000, "TR", "Turkey"),
    "DE": (20000, "DE", "Germany"),
    "AU": (30000, "AU", "Australia"),
    "SG": (10000, "SG", "Singapore"),
    "IN": (10000, "IN", "India"),
    "UA": (40000, "UA", "Ukraine"),
    "EG": (20000, "EG", "Egypt"),
    "IL": (30000, "IL", "Israel"),
    "HK": (10000, "HK", "Hong Kong"),
    "JP": (30000, "JP", "Japan"),
    "CN": (30000, "CN", "China"),
    "BR": (10000, "BR", "Brazil"),
    "PK": (10000, "PK", "Pakistan"),
    "CO": (30000, "CO", "Colombia"),
    "MX": (20000, "MX", "Mexico"),
    "AE": (20000, "AE", "United Arab Emirates"),
    "PH": (40000, "PH", "Philippines"),
    "TW": (20000, "TW", "Taiwan"),
    "KR": (10000, "KR", "South Korea"),
    "TH": (30000, "TH", "Thailand"),
    "NZ": (39000, "NZ", "New Zealand"),
    "ZA": (40000, "ZA", "South Africa"),
    "GB": (30000, "GB", "United Kingdom"),
    "NG": (42000, "NG", "Nigeria"),
}

# Localized names accepted from storefront and account payloads.
_LOCALIZED_NAMES: dict[str, tuple[str, ...]] = {
    "US": ("ארצות הברית", "الولايات المتحدة", "USA"),
    "DE": ("גרמניה", "ألمانيا"),
    "IL": ("ישראל", "إسرائيل"),
    "TR": ("טורקיה", "تركيا"),
    "AE": ("איחוד האמירויות", "الإمارات العربية المتحدة", "UAE"),
    "GB": ("בריטניה", "المملكة المتحدة", "UK"),
    "EG": ("מצרים", "مصر"),
    "IN": ("הודו", "الهند"),
    "BR": ("ברזיל", "البرازيل"),
    "AR": ("ארגנטינה", "الأرجنتين"),
}


class RegionRegistry:
    """Static lookup of RegionConfig by region code.

    Usage:
        registry = RegionRegistry()
        config = registry.require("DE")
        config.market  # "DE"
    """

    def __init__(self, configs: Optional[dict[str, RegionConfig]] = None):
        if configs is None:
            configs = {
                code: RegionConfig(
                    code=code,
                    host=f"{code.lower()}.{_PROXY_DOMAIN}",
                    port=port,
                    market=market,
                    name=name,
                )
                for code, (port, market, name) in _REGION_TABLE.items()
            }
        self._configs = MappingProxyType(dict(configs))
        self._lookup = self._build_lookup()

    def _build_lookup(self) -> dict[str, str]:
        lookup: dict[str, str] = {}
        for code, config in self._configs.items():
            lookup[code.lower()] = code
            if config.name:
                lookup[config.name.lower()] = code
            for name in _LOCALIZED_NAMES.get(code, ()):
                lookup[name.lower()] = code
        return lookup

    @property
    def codes(self) -> list[str]:
        return sorted(self._configs)

    def __contains__(self, region: str) -> bool:
        return region.upper() in self._configs

    def __iter__(self):
        return iter(self._configs.values())

    def __len__(self) -> int:
        return len(self._configs)

    def normalize(self, region: Optional[str]) -> Optional[str]:
        """Map a region code or localized country name to a region code.

        Unknown input is returned upper-cased so global codes pass through.
        """
        if region is None:
            return None
        cleaned = region.strip()
        if not cleaned:
            return None
        return self._lookup.get(cleaned.lower(), cleaned.upper())

    def is_global(self, region: Optional[str]) -> bool:
        return bool(region) and region.strip().upper() in GLOBAL_REGIONS

    def get(self, region: str) -> Optional[RegionConfig]:
        code = self.normalize(region)
        if code is None:
            return None
        return self._configs.get(code)

    def require(self, region: str) -> RegionConfig:
        """Get the config for a region or raise unsupported_region."""
        config = self.get(region)
        if config is None:
            raise ActivationError(ErrorCode.UNSUPPORTED_REGION, detail=region)
        return config

    def market_for(self, region: str) -> str:
        if self.is_global(region):
            return GLOBAL_MARKET
        return self.require(region).market

    def region_name(self, region: str) -> str:
        config = self.get(region)
        return config.name if config and config.name else region
