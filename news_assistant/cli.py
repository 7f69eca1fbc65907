"""
Command-Line Interface for the News AI Assistant

Provides CLI commands for:
- Asking questions in a chat session
- Session management (list, create, history, rename, clear, delete)
- Article indexing and semantic search
- Pipeline smoke tests
- Running the HTTP/WebSocket server
"""

import sys
import argparse
import logging
from pathlib import Path

from .config import get_config
from .factory import build_indexer, build_pipeline, build_session_store


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def _print_sources(sources):
    if not sources:
        return
    print("Sources:")
    for i, source in enumerate(sources, 1):
        print(f"  [{i}] {source.title}")
        print(f"      {source.url}")
    print()


def cmd_ask(args):
    """Handle the ask command."""
    pipeline = build_pipeline(get_config())

    print(f"Question: {args.question}")
    print()

    result = pipeline.process_query(args.question, args.session)

    print("Answer:")
    print(result.response)
    print()

    if not args.no_sources:
        _print_sources(result.sources)

    if result.degraded:
        print(f"(degraded: {result.error or 'fallback answer'})")

    print(f"Session ID: {result.session_id}")
    print("(Use this session ID for follow-up questions)")


def cmd_sessions(args):
    """Handle the sessions command."""
    store = build_session_store(get_config())
    sessions = store.get_all_sessions()

    if not sessions:
        print("No sessions found.")
        return

    print(f"Found {len(sessions)} sessions:\n")
    for session in sessions:
        print(f"  {session.id}  {session.title}")
        print(f"      Messages: {session.message_count}  Last activity: {session.last_activity}")


def cmd_create_session(args):
    """Handle the create-session command."""
    store = build_session_store(get_config())
    session_id = store.create_session(args.title)
    print(f"✓ Created session: {session_id}")


def cmd_history(args):
    """Handle the history command."""
    store = build_session_store(get_config())
    history = store.get_chat_history(args.session_id, args.limit)

    if history is None:
        print(f"✗ Session not found: {args.session_id}")
        sys.exit(1)

    if not history:
        print("No messages yet.")
        return

    for turn in history:
        print(f"[{turn.timestamp}] {turn.role}: {turn.content}")
        print()


def cmd_rename(args):
    """Handle the rename command."""
    store = build_session_store(get_config())
    session = store.update_session_title(args.session_id, args.title)
    print(f"✓ Session renamed to \"{session.title}\"")


def cmd_clear(args):
    """Handle the clear command."""
    store = build_session_store(get_config())
    if not store.session_exists(args.session_id):
        print(f"✗ Session not found: {args.session_id}")
        sys.exit(1)

    store.clear_chat_history(args.session_id)
    print(f"✓ Cleared chat history for {args.session_id}")


def cmd_delete(args):
    """Handle the delete command."""
    store = build_session_store(get_config())
    if not store.session_exists(args.session_id):
        print(f"✗ Session not found: {args.session_id}")
        sys.exit(1)

    store.delete_session(args.session_id)
    print(f"✓ Deleted session {args.session_id}")


def cmd_index(args):
    """Handle the index command."""
    if not Path(args.file).exists():
        print(f"✗ Error: File not found: {args.file}")
        sys.exit(1)

    indexer = build_indexer(get_config())

    print(f"Indexing articles from: {args.file}")
    results = indexer.index_from_file(args.file, show_progress=True)

    print(f"\n{'='*60}")
    print("Indexing Summary:")
    print(f"  Total articles: {results['total']}")
    print(f"  Indexed: {results['indexed']}")
    print(f"  Skipped: {results['skipped']}")
    print(f"  Failed: {results['failed']}")
    print(f"  Collection size: {results['collection']['total_vectors']}")
    print(f"  Processing time: {results['processing_time']:.2f}s")
    print(f"{'='*60}")


def cmd_search(args):
    """Handle the search command."""
    indexer = build_indexer(get_config())

    print(f"Searching for: {args.query}")
    print()

    articles = indexer.test_search(args.query, limit=args.limit, score_threshold=args.min_score)

    if not articles:
        print("No results found.")
        return

    print(f"Found {len(articles)} results:\n")
    for i, article in enumerate(articles, 1):
        print(f"[{i}] {article.title}")
        print(f"    URL: {article.url}")
        print(f"    Source: {article.source}  Published: {article.published_at}")
        print(f"    Similarity: {article.score:.3f}")
        print()


def cmd_test_query(args):
    """Handle the test-query command."""
    pipeline = build_pipeline(get_config())
    result = pipeline.test_query(args.query)

    print(f"Test query: {args.query}")
    print(f"Status: {result.status.value}")
    print()
    print(result.response)
    print()
    _print_sources(result.sources)


def cmd_serve(args):
    """Handle the serve command."""
    import uvicorn

    from .api.app import create_app

    config = get_config()
    host = args.host or config.host
    port = args.port or config.port

    print(f"Starting News AI Assistant server on {host}:{port}")
    uvicorn.run(create_app(config=config), host=host, port=port)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        description='News AI Assistant - Conversational question answering over news articles',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Index articles from a JSON file
  python -m news_assistant.cli index data/articles.json

  # Ask a question (starts a new session)
  python -m news_assistant.cli ask "What happened in the markets today?"

  # Follow up in the same session
  python -m news_assistant.cli ask "Why?" --session sess_...

  # List sessions
  python -m news_assistant.cli sessions

  # Run the server
  python -m news_assistant.cli serve --port 3000
        """
    )

    # Global arguments
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    # Subcommands
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Ask command
    ask_parser = subparsers.add_parser(
        'ask',
        help='Ask a question and get a grounded answer'
    )
    ask_parser.add_argument(
        'question',
        help='Question to ask'
    )
    ask_parser.add_argument(
        '--session',
        help='Session ID for multi-turn conversation'
    )
    ask_parser.add_argument(
        '--no-sources',
        action='store_true',
        help='Disable source citations'
    )
    ask_parser.set_defaults(func=cmd_ask)

    # Sessions command
    sessions_parser = subparsers.add_parser(
        'sessions',
        help='List all sessions, most recent first'
    )
    sessions_parser.set_defaults(func=cmd_sessions)

    # Create session command
    create_parser = subparsers.add_parser(
        'create-session',
        help='Create an empty session'
    )
    create_parser.add_argument(
        '--title',
        help='Session title (default: "New Chat")'
    )
    create_parser.set_defaults(func=cmd_create_session)

    # History command
    history_parser = subparsers.add_parser(
        'history',
        help='Show the chat history of a session'
    )
    history_parser.add_argument(
        'session_id',
        help='Session ID'
    )
    history_parser.add_argument(
        '--limit',
        type=int,
        default=50,
        help='Number of most recent messages to show (default: 50)'
    )
    history_parser.set_defaults(func=cmd_history)

    # Rename command
    rename_parser = subparsers.add_parser(
        'rename',
        help='Change the title of a session'
    )
    rename_parser.add_argument(
        'session_id',
        help='Session ID'
    )
    rename_parser.add_argument(
        'title',
        help='New title'
    )
    rename_parser.set_defaults(func=cmd_rename)

    # Clear command
    clear_parser = subparsers.add_parser(
        'clear',
        help='Clear the chat history of a session'
    )
    clear_parser.add_argument(
        'session_id',
        help='Session ID'
    )
    clear_parser.set_defaults(func=cmd_clear)

    # Delete command
    delete_parser = subparsers.add_parser(
        'delete',
        help='Delete a session and its history'
    )
    delete_parser.add_argument(
        'session_id',
        help='Session ID'
    )
    delete_parser.set_defaults(func=cmd_delete)

    # Index command
    index_parser = subparsers.add_parser(
        'index',
        help='Embed and index articles from a JSON file'
    )
    index_parser.add_argument(
        'file',
        help='JSON file containing a list of articles'
    )
    index_parser.set_defaults(func=cmd_index)

    # Search command
    search_parser = subparsers.add_parser(
        'search',
        help='Search indexed articles'
    )
    search_parser.add_argument(
        'query',
        help='Search query'
    )
    search_parser.add_argument(
        '--limit',
        type=int,
        default=5,
        help='Number of results to return (default: 5)'
    )
    search_parser.add_argument(
        '--min-score',
        type=float,
        default=0.6,
        help='Minimum cosine similarity (default: 0.6)'
    )
    search_parser.set_defaults(func=cmd_search)

    # Test query command
    test_parser = subparsers.add_parser(
        'test-query',
        help='Run one query through the pipeline without a session'
    )
    test_parser.add_argument(
        'query',
        nargs='?',
        default="What's the latest news about technology?",
        help='Query to test'
    )
    test_parser.set_defaults(func=cmd_test_query)

    # Serve command
    serve_parser = subparsers.add_parser(
        'serve',
        help='Run the HTTP and WebSocket server'
    )
    serve_parser.add_argument(
        '--host',
        help='Bind address (default: HOST from environment)'
    )
    serve_parser.add_argument(
        '--port',
        type=int,
        help='Port (default: PORT from environment)'
    )
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()

    # Parse arguments
    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(args.verbose)

    # Execute command
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\n✗ Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
