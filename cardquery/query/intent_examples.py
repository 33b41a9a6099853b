"""Labeled utterances used to seed the intent vector store."""

INTENT_EXAMPLES: dict[str, tuple[str, ...]] = {
    "filter": (
        "show me my cards",
        "list all my cards",
        "which cards have a balance over 5000",
        "cards with apr under 20%",
        "show visa cards with a balance",
        "cards with no annual fee",
        "which cards are paid off",
        "what is my chase sapphire card balance",
        "cards with a credit limit above 10000",
        "show my chase or citi cards",
        "which cards are due this week",
        "what is the apr on my cards",
    ),
    "aggregate": (
        "what is my total balance",
        "total balance across all cards",
        "how much do I owe in total",
        "what is my average apr",
        "how many cards do I have",
        "sum of my credit limits",
        "how many cards have a balance",
        "average balance by issuer",
        "what is my maximum credit limit",
        "total annual fees I pay",
    ),
    "rank": (
        "which card has the highest apr",
        "card with the lowest balance",
        "show me my 3 highest balance cards",
        "top 3 cards by credit limit",
        "which card has the longest grace period",
        "card with the most available credit",
        "best card for dining",
        "which card has the shortest grace period",
        "lowest interest rate card",
        "which card should I use for groceries",
    ),
    "compare": (
        "compare my cards by apr",
        "sort my cards by balance",
        "rank my cards by credit limit",
        "compare the annual fees of my cards",
        "order my cards by utilization",
        "how do my cards compare on rewards",
    ),
    "distinct": (
        "what are the different issuers",
        "what networks do I have",
        "which banks are my cards from",
        "what kinds of cards do I have",
        "list the distinct card types",
        "breakdown of my cards by network",
    ),
    "conversational": (
        "hello there",
        "hi",
        "thanks",
        "thank you so much",
        "good morning",
        "who are you",
        "what can you do",
        "how are you today",
        "goodbye",
        "tell me a joke",
    ),
}
