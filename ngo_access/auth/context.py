from dataclasses import dataclass


@dataclass(frozen=True)
class Principal:
    """The authenticated user behind a request."""
    user_id: str
    email: str | None = None


@dataclass
class AuthContext:
    """Identity context for authenticated requests."""
    principal: Principal
    token: str

    @property
    def user_id(self) -> str:
        return self.principal.user_id

    @property
    def email(self) -> str | None:
        return self.principal.email
