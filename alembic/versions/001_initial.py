"""Initial schema: runs, snapshots, changes, metadata, areas, health

Revision ID: 001_initial
Revises: 
Create Date: 2025-01-15 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

DEFAULT_AREAS = [
    'milano', 'roma', 'napoli', 'torino', 'firenze',
    'bologna', 'genova', 'palermo', 'venezia', 'verona',
]


def upgrade() -> None:
    # Scrape runs
    op.create_table(
        'scrape_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_type', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('properties_discovered', sa.Integer(), server_default='0', nullable=True),
        sa.Column('properties_changed', sa.Integer(), server_default='0', nullable=True),
        sa.Column('properties_unchanged', sa.Integer(), server_default='0', nullable=True),
        sa.Column('properties_new', sa.Integer(), server_default='0', nullable=True),
        sa.Column('properties_inactive', sa.Integer(), server_default='0', nullable=True),
        sa.Column('errors_count', sa.Integer(), server_default='0', nullable=True),
        sa.Column('duration_seconds', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_scrape_runs_started', 'scrape_runs', [sa.text('started_at DESC')])
    op.create_index('idx_scrape_runs_status', 'scrape_runs', ['status'])

    # Property snapshots
    op.create_table(
        'property_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('portal_id', sa.String(length=100), nullable=False),
        sa.Column('scraped_at', sa.DateTime(), nullable=False),
        sa.Column('raw_data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('checksum', sa.String(length=64), nullable=False),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=True),
        sa.Column('transaction_type', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_snapshots_portal_id', 'property_snapshots', ['portal_id'])
    op.create_index('idx_snapshots_scraped_at', 'property_snapshots', [sa.text('scraped_at DESC')])
    op.create_index('idx_snapshots_checksum', 'property_snapshots', ['checksum'])
    op.create_index('idx_snapshots_price', 'property_snapshots', ['price'])

    # Property changes
    op.create_table(
        'property_changes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('portal_id', sa.String(length=100), nullable=False),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
        sa.Column('change_type', sa.String(length=50), nullable=False),
        sa.Column('field_name', sa.String(length=100), nullable=True),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('snapshot_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['snapshot_id'], ['property_snapshots.id'], )
    )
    op.create_index('idx_changes_portal_id', 'property_changes', ['portal_id'])
    op.create_index('idx_changes_changed_at', 'property_changes', [sa.text('changed_at DESC')])
    op.create_index('idx_changes_type', 'property_changes', ['change_type'])

    # Property metadata
    op.create_table(
        'property_metadata',
        sa.Column('portal_id', sa.String(length=100), nullable=False),
        sa.Column('first_seen', sa.DateTime(), nullable=False),
        sa.Column('last_seen', sa.DateTime(), nullable=False),
        sa.Column('last_changed', sa.DateTime(), nullable=True),
        sa.Column('current_status', sa.String(length=50), nullable=True),
        sa.Column('current_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('scrape_count', sa.Integer(), server_default='1', nullable=True),
        sa.Column('change_count', sa.Integer(), server_default='0', nullable=True),
        sa.Column('change_rate', sa.Numeric(precision=5, scale=4), server_default='0', nullable=True),
        sa.Column('area', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('portal_id')
    )
    op.create_index('idx_metadata_last_seen', 'property_metadata', [sa.text('last_seen DESC')])
    op.create_index('idx_metadata_change_rate', 'property_metadata', [sa.text('change_rate DESC')])
    op.create_index('idx_metadata_status', 'property_metadata', ['current_status'])
    op.create_index('idx_metadata_area', 'property_metadata', ['area'])

    # Geographic areas
    op.create_table(
        'geographic_areas',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('area_name', sa.String(length=100), nullable=False),
        sa.Column('area_type', sa.String(length=20), nullable=False),
        sa.Column('change_rate', sa.Numeric(precision=5, scale=4), server_default='0', nullable=True),
        sa.Column('scrape_interval_hours', sa.Integer(), server_default='6', nullable=True),
        sa.Column('last_scraped', sa.DateTime(), nullable=True),
        sa.Column('next_scrape', sa.DateTime(), nullable=True),
        sa.Column('total_properties', sa.Integer(), server_default='0', nullable=True),
        sa.Column('active_properties', sa.Integer(), server_default='0', nullable=True),
        sa.Column('avg_changes_per_scrape', sa.Numeric(precision=5, scale=2), server_default='0', nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('area_name')
    )
    op.create_index('idx_areas_next_scrape', 'geographic_areas', ['next_scrape'])
    op.create_index('idx_areas_change_rate', 'geographic_areas', [sa.text('change_rate DESC')])
    op.create_index('idx_areas_type', 'geographic_areas', ['area_type'])

    # Scraper health
    op.create_table(
        'scraper_health',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('checked_at', sa.DateTime(), nullable=False),
        sa.Column('redis_connected', sa.Boolean(), nullable=True),
        sa.Column('postgres_connected', sa.Boolean(), nullable=True),
        sa.Column('queue_depth', sa.Integer(), nullable=True),
        sa.Column('processed_count', sa.Integer(), nullable=True),
        sa.Column('failed_count', sa.Integer(), nullable=True),
        sa.Column('worker_count', sa.Integer(), nullable=True),
        sa.Column('avg_processing_time_ms', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('errors_last_hour', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_health_checked_at', 'scraper_health', [sa.text('checked_at DESC')])

    # Quick stats view
    op.execute("""
        CREATE OR REPLACE VIEW scraper_stats AS
        SELECT
          (SELECT COUNT(*) FROM property_snapshots) AS total_snapshots,
          (SELECT COUNT(*) FROM property_changes) AS total_changes,
          (SELECT COUNT(*) FROM property_metadata) AS total_properties,
          (SELECT COUNT(*) FROM property_metadata WHERE current_status = 'active') AS active_properties,
          (SELECT AVG(change_rate) FROM property_metadata) AS avg_change_rate,
          (SELECT MAX(scraped_at) FROM property_snapshots) AS last_scrape_time,
          (SELECT COUNT(*) FROM scrape_runs WHERE status = 'running') AS active_runs
    """)

    # Default areas
    values = ", ".join(f"('{name}', 'city', 6)" for name in DEFAULT_AREAS)
    op.execute(
        "INSERT INTO geographic_areas (area_name, area_type, scrape_interval_hours) "
        f"VALUES {values} ON CONFLICT (area_name) DO NOTHING"
    )


def downgrade() -> None:
    op.execute("DROP VIEW IF EXISTS scraper_stats")
    op.drop_index('idx_health_checked_at', table_name='scraper_health')
    op.drop_table('scraper_health')
    op.drop_index('idx_areas_type', table_name='geographic_areas')
    op.drop_index('idx_areas_change_rate', table_name='geographic_areas')
    op.drop_index('idx_areas_next_scrape', table_name='geographic_areas')
    op.drop_table('geographic_areas')
    op.drop_index('idx_metadata_area', table_name='property_metadata')
    op.drop_index('idx_metadata_status', table_name='property_metadata')
    op.drop_index('idx_metadata_change_rate', table_name='property_metadata')
    op.drop_index('idx_metadata_last_seen', table_name='property_metadata')
    op.drop_table('property_metadata')
    op.drop_index('idx_changes_type', table_name='property_changes')
    op.drop_index('idx_changes_changed_at', table_name='property_changes')
    op.drop_index('idx_changes_portal_id', table_name='property_changes')
    op.drop_table('property_changes')
    op.drop_index('idx_snapshots_price', table_name='property_snapshots')
    op.drop_index('idx_snapshots_checksum', table_name='property_snapshots')
    op.drop_index('idx_snapshots_scraped_at', table_name='property_snapshots')
    op.drop_index('idx_snapshots_portal_id', table_name='property_snapshots')
    op.drop_table('property_snapshots')
    op.drop_index('idx_scrape_runs_status', table_name='scrape_runs')
    op.drop_index('idx_scrape_runs_started', table_name='scrape_runs')
    op.drop_table('scrape_runs')
