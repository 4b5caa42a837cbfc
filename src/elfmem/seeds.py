"""Default golden rules and heuristics written to an empty global store."""

DEFAULT_RULES = [
    "Always validate user inputs before processing to prevent security vulnerabilities",
    "Use TypeScript strict mode for better type safety and fewer runtime errors",
    "Write tests for critical functionality to ensure code reliability",
    "Document complex algorithms and business logic for future maintainability",
    "Handle errors gracefully with proper error messages and recovery strategies",
    "Use environment variables for configuration instead of hardcoding values",
    "Follow the principle of least privilege when dealing with permissions",
    "Keep dependencies up to date to avoid security vulnerabilities",
    "Use descriptive variable and function names for better code readability",
    "Avoid premature optimization - make it work first, then optimize if needed",
]

# (pattern, suggestion); patterns are matched case-insensitively with re.search
DEFAULT_HEURISTICS = [
    ("npm install", "Ensure package.json exists before running npm install"),
    (r"npm.*ERR.*ENOENT.*package\.json", "Missing package.json - initialize with 'npm init' first"),
    ("git commit", "Check that files are staged with 'git add' before committing"),
    ("git push.*rejected", "Pull latest changes with 'git pull' before pushing"),
    ("docker.*not found", "Ensure Docker daemon is running with 'docker ps'"),
    ("permission denied", "Check file permissions or use sudo if appropriate"),
    ("port.*already in use", "Check for processes using the port with 'lsof -i' or 'netstat'"),
    ("cannot find module", "Install dependencies with 'npm install' or check import paths"),
    ("typescript.*error TS", "Run 'tsc --noEmit' to see all TypeScript errors"),
    ("test.*fail", "Review test output and check for recent code changes"),
]
