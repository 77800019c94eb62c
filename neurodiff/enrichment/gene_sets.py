"""
Gene set databases and GMT file handling
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Union

from ..exceptions import InputValidationError
from ..utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GeneSetDatabase:
    """Named, versioned mapping of annotation terms to gene symbols"""

    name: str
    terms: Mapping[str, FrozenSet[str]]
    version: Optional[str] = None
    descriptions: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(
            self, "terms", {term: frozenset(genes) for term, genes in self.terms.items()}
        )

    @classmethod
    def from_dict(
        cls, name: str, terms: Mapping[str, Iterable[str]], version: Optional[str] = None
    ) -> "GeneSetDatabase":
        return cls(name=name, terms={t: frozenset(g) for t, g in terms.items()}, version=version)

    @classmethod
    def from_gmt(
        cls,
        gmt_file: Union[str, Path],
        name: Optional[str] = None,
        version: Optional[str] = None,
    ) -> "GeneSetDatabase":
        """
        Read a GMT file (term, description, genes... tab separated)

        Args:
            gmt_file: Path to the GMT file
            name: Database name (default: file stem)
            version: Optional version label

        Returns:
            GeneSetDatabase
        """
        gmt_path = Path(gmt_file)
        if not gmt_path.exists():
            raise InputValidationError(f"GMT file not found: {gmt_path}", field="gmt_files")

        terms: Dict[str, FrozenSet[str]] = {}
        descriptions: Dict[str, str] = {}

        with open(gmt_path, "r") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.rstrip("\n\r")
                if not line.strip():
                    continue
                fields = line.split("\t")
                if len(fields) < 3:
                    raise InputValidationError(
                        f"{gmt_path}:{line_number}: expected term, description and genes",
                        field="gmt_files",
                    )
                term = fields[0]
                if term in terms:
                    raise InputValidationError(
                        f"{gmt_path}:{line_number}: duplicated term '{term}'",
                        field="gmt_files",
                    )
                terms[term] = frozenset(gene for gene in fields[2:] if gene)
                descriptions[term] = fields[1]

        logger.debug(f"Loaded {len(terms)} gene sets from {gmt_path}")

        return cls(
            name=name or gmt_path.stem,
            terms=terms,
            version=version,
            descriptions=descriptions,
        )

    def to_gmt(self, output_file: Union[str, Path]) -> Path:
        """Write the database in GMT format (genes sorted)"""
        gmt_path = Path(output_file)
        gmt_path.parent.mkdir(parents=True, exist_ok=True)

        with open(gmt_path, "w") as f:
            for term, genes in self.terms.items():
                description = self.descriptions.get(term, term)
                genes_str = "\t".join(sorted(genes))
                f.write(f"{term}\t{description}\t{genes_str}\n")

        logger.info(f"Gene sets saved to {gmt_path}")
        return gmt_path

    @property
    def background(self) -> FrozenSet[str]:
        """Union of all annotated symbols"""
        return frozenset().union(*self.terms.values()) if self.terms else frozenset()

    @property
    def label(self) -> str:
        return f"{self.name} ({self.version})" if self.version else self.name

    def __len__(self) -> int:
        return len(self.terms)

    def __contains__(self, term: object) -> bool:
        return term in self.terms
