"""cute shareable - a minimal copy/paste command string."""


class ShareableCommand:
    """Reduced view of a command: base word, url, headers, outfile, verbose.

    Kept in sync as options are added; never the source of truth.
    """

    def __init__(
        self,
        command: str = "",
        url: str = "",
        headers: list[tuple[str, str]] | None = None,
        outfile: str = "",
        verbose: bool = False,
    ):
        self.command = command
        self.url = url
        self.headers: list[tuple[str, str]] = list(headers or [])
        self.outfile = outfile
        self.verbose = verbose

    def set_command(self, command: str) -> None:
        self.command = command

    def set_url(self, url: str) -> None:
        self.url = url

    def set_outfile(self, outfile: str) -> None:
        self.outfile = outfile

    def set_verbose(self, verbose: bool) -> None:
        self.verbose = verbose

    def push_header(self, header: tuple[str, str]) -> None:
        self.headers.append(header)

    def clear_headers(self) -> None:
        self.headers = []

    def render(self) -> str | None:
        """Return the simplest runnable command, or None without command/url."""
        if not self.command or not self.url:
            return None
        parts = [self.command]
        if self.verbose:
            parts.append("-v")
        parts.append(self.url)
        for key, value in self.headers:
            parts.append(f'-H "{key}:{value}"')
        if self.outfile:
            parts.append(f"-o {self.outfile}")
        return " ".join(parts)
