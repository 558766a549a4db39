import os
from dotenv import load_dotenv
from pathlib import Path

# Load environment variables from .env file with explicit path
load_dotenv(dotenv_path=Path(__file__).parent.parent / '.env')

# OpenAI Configuration
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# Embedding Configuration
#
# All stored vectors must come from the same model. The model name is persisted
# next to every vector so a model change can be detected and re-embedded.
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "0")) or None
# text-embedding-3-small accepts 8191 tokens; 20k chars is a conservative proxy for Spanish text
EMBEDDING_MAX_INPUT_CHARS = int(os.getenv("EMBEDDING_MAX_INPUT_CHARS", "20000"))
EMBEDDING_WINDOW_OVERLAP = int(os.getenv("EMBEDDING_WINDOW_OVERLAP", "500"))
EMBEDDING_MAX_WINDOWS = int(os.getenv("EMBEDDING_MAX_WINDOWS", "8"))
EMBEDDING_TIMEOUT_SECONDS = float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "30"))
EMBEDDING_MAX_ATTEMPTS = int(os.getenv("EMBEDDING_MAX_ATTEMPTS", "3"))
QUERY_CACHE_SIZE = int(os.getenv("QUERY_CACHE_SIZE", "256"))

# Retrieval Configuration
#
# Candidate text is cut to MAX_CANDIDATE_CHARS; above CONTEXT_MAX_CHARS nothing could ever be packed
MAX_CANDIDATE_CHARS = int(os.getenv("MAX_CANDIDATE_CHARS", "3500"))
CONTEXT_MAX_CHARS = int(os.getenv("CONTEXT_MAX_CHARS", "10000"))
MIN_RELEVANCE_SCORE = float(os.getenv("MIN_RELEVANCE_SCORE", "0.1"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
TOPIC_BOOST = float(os.getenv("TOPIC_BOOST", "0.3"))
ARTICLE_MATCH_BOOST = float(os.getenv("ARTICLE_MATCH_BOOST", "0.5"))
TITLE_MATCH_BOOST = float(os.getenv("TITLE_MATCH_BOOST", "0.5"))
LAW_ALIAS_BOOST = float(os.getenv("LAW_ALIAS_BOOST", "0.5"))
# Multiplicative: law documents on legal queries, syllabus topics on "tema" queries
LAW_DOCUMENT_BOOST = float(os.getenv("LAW_DOCUMENT_BOOST", "0.8"))
SYLLABUS_DOCUMENT_BOOST = float(os.getenv("SYLLABUS_DOCUMENT_BOOST", "0.5"))

# Database Configuration
DOCUMENT_DB_PATH = os.getenv("DOCUMENT_DB_PATH", "temario/documents.db")

# Embedding reconciliation (batch re-embedding of documents without a vector)
RECONCILE_BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "5"))
RECONCILE_DELAY_SECONDS = float(os.getenv("RECONCILE_DELAY_SECONDS", "1.0"))
